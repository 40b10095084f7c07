"""
Réassemblage d'un fichier depuis des chunks arrivant dans le désordre.

Chaque chunk est écrit à l'offset absolu ``index * CHUNK_SIZE`` par une
écriture positionnelle: aucun chunk précédent n'a besoin d'exister. Les
offsets de chunks distincts ne se chevauchent jamais, seul l'ensemble des
index déjà reçus est protégé par un verrou.

Example:
    >>> import tempfile, os
    >>> from shardfarm.models import Chunk
    >>> path = os.path.join(tempfile.mkdtemp(), 'out.bin')
    >>> chunks = [Chunk.from_data(1, b'cd'), Chunk.from_data(0, b'ab')]
    >>> assemble_chunks(chunks, path, total_chunks=2, chunk_size=2)
    2
    >>> open(path, 'rb').read()
    b'abcd'
"""

import logging
import os
import threading
from typing import AsyncIterator, Iterable, List, Optional, Set

from .config import CHUNK_SIZE
from .exceptions import (
    ChunkStorageError, ChunkOutOfBoundsError, IncompleteAssemblyError
)
from .models import Chunk


class ChunkAssembler:
    """
    Écrit des chunks aux bons offsets et valide la complétude.

    Le fichier de sortie est tronqué à l'ouverture. Un chunk déjà écrit
    est ignoré silencieusement (re-livraison idempotente).

    Attributes:
        output_path: Chemin du fichier reconstruit
        total_chunks: Nombre de chunks attendus
        chunk_size: Taille nominale d'un chunk
        logger: Logger pour le debug

    Example:
        >>> import tempfile, os
        >>> path = os.path.join(tempfile.mkdtemp(), 'empty.bin')
        >>> with ChunkAssembler(path, total_chunks=0) as assembler:
        ...     assembler.finalize()
        0
    """

    def __init__(self, output_path: str, total_chunks: int,
                 chunk_size: int = CHUNK_SIZE,
                 logger: Optional[logging.Logger] = None):
        self.output_path = os.fspath(output_path)
        self.total_chunks = total_chunks
        self.chunk_size = chunk_size
        self.logger = logger or logging.getLogger(__name__)

        self._received: Set[int] = set()
        self._lock = threading.Lock()
        self._file = None
        self._fd: Optional[int] = None
        self._positional = hasattr(os, 'pwrite')

    def open(self) -> 'ChunkAssembler':
        """
        Ouvre (et tronque) le fichier de sortie.

        Raises:
            ChunkStorageError: Si le fichier ne peut pas être créé
        """
        try:
            self._file = open(self.output_path, 'w+b')
        except OSError as e:
            raise ChunkStorageError(
                f"Cannot open output file: {e}",
                path=self.output_path,
                operation='open'
            ) from e
        self._fd = self._file.fileno()
        return self

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
            self._fd = None

    def __enter__(self) -> 'ChunkAssembler':
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def received_count(self) -> int:
        with self._lock:
            return len(self._received)

    def _write_at(self, data: bytes, offset: int) -> None:
        if self._positional:
            view = memoryview(data)
            while view:
                written = os.pwrite(self._fd, view, offset)
                view = view[written:]
                offset += written
        else:
            # Sans pwrite, seek + write doivent être atomiques ensemble
            with self._lock:
                self._file.seek(offset)
                self._file.write(data)
                self._file.flush()

    def write(self, chunk: Chunk) -> bool:
        """
        Écrit un chunk à son offset.

        Thread-safe: peut être appelée depuis plusieurs workers.

        Args:
            chunk: Chunk en clair à écrire

        Returns:
            True si écrit, False si l'index avait déjà été reçu

        Raises:
            ChunkOutOfBoundsError: Si l'index est hors de [0, total_chunks)
            ChunkStorageError: Si l'écriture échoue
        """
        if self._file is None:
            raise ChunkStorageError("Assembler is not open", path=self.output_path,
                                    operation='write')
        if not 0 <= chunk.index < self.total_chunks:
            raise ChunkOutOfBoundsError(
                "Chunk index out of bounds",
                chunk_index=chunk.index,
                total_chunks=self.total_chunks
            )

        with self._lock:
            if chunk.index in self._received:
                self.logger.debug(f"Chunk {chunk.index} déjà écrit, ignoré")
                return False
            self._received.add(chunk.index)

        try:
            self._write_at(chunk.data, chunk.index * self.chunk_size)
        except OSError as e:
            with self._lock:
                self._received.discard(chunk.index)
            raise ChunkStorageError(
                f"Failed to write chunk {chunk.index}: {e}",
                path=self.output_path,
                operation='write'
            ) from e

        self.logger.debug(f"Chunk {chunk.index} écrit ({len(chunk.data)} bytes)")
        return True

    def missing_indices(self) -> List[int]:
        """Indices pas encore reçus, triés."""
        with self._lock:
            return [i for i in range(self.total_chunks) if i not in self._received]

    def finalize(self) -> int:
        """
        Vérifie que tous les chunks ont été écrits.

        Returns:
            Nombre de chunks écrits

        Raises:
            IncompleteAssemblyError: S'il manque des chunks; le fichier
                peut contenir des données partielles et n'est pas valide
        """
        missing = self.missing_indices()
        received = self.total_chunks - len(missing)
        if missing:
            raise IncompleteAssemblyError(
                f"Assembly incomplete: {len(missing)} chunk(s) missing",
                expected=self.total_chunks,
                received=received,
                missing_indices=missing
            )
        if self._file is not None:
            try:
                self._file.flush()
                os.fsync(self._fd)
            except OSError as e:
                raise ChunkStorageError(
                    f"Failed to flush output file: {e}",
                    path=self.output_path,
                    operation='fsync'
                ) from e
        self.logger.info(f"Fichier assemblé: {self.output_path} ({received} chunks)")
        return received


def assemble_chunks(chunks: Iterable[Chunk], output_path: str, total_chunks: int,
                    chunk_size: int = CHUNK_SIZE,
                    logger: Optional[logging.Logger] = None) -> int:
    """
    Assemble un itérable de chunks dans un fichier.

    Returns:
        Nombre de chunks écrits

    Raises:
        ChunkOutOfBoundsError: Index hors limites
        IncompleteAssemblyError: Chunks manquants à la fin du flux
    """
    with ChunkAssembler(output_path, total_chunks, chunk_size, logger) as assembler:
        for chunk in chunks:
            assembler.write(chunk)
        return assembler.finalize()


async def assemble_chunk_stream(stream: AsyncIterator[Chunk], output_path: str,
                                total_chunks: int, chunk_size: int = CHUNK_SIZE,
                                logger: Optional[logging.Logger] = None) -> int:
    """
    Assemble un flux asynchrone de chunks dans un fichier.

    Returns:
        Nombre de chunks écrits
    """
    with ChunkAssembler(output_path, total_chunks, chunk_size, logger) as assembler:
        async for chunk in stream:
            assembler.write(chunk)
        return assembler.finalize()
