"""
Découpage en flux d'un fichier en chunks de taille fixe.

Le fichier n'est jamais chargé entièrement en mémoire: les chunks sont lus
un par un, dans l'ordre strict des index, par un unique producteur qui
alimente une file bornée (lookahead). Le chiffrement et l'erasure coding
en aval peuvent ainsi se chevaucher avec les lectures disque.

Un échec de lecture est livré comme événement terminal, après tous les
chunks déjà produits.

Example:
    >>> import io
    >>> from shardfarm.chunker import iter_chunks
    >>> [c.size for c in iter_chunks(io.BytesIO(b'x' * 10), chunk_size=4)]
    [4, 4, 2]
"""

import asyncio
import hashlib
import logging
import os
from typing import BinaryIO, Iterator, Optional, Tuple, Union

from .config import CHUNK_SIZE, CHUNK_LOOKAHEAD
from .exceptions import ConfigurationError, ChunkStorageError, ChunkReadError
from .models import Chunk, compute_chunk_hash


Source = Union[str, os.PathLike, BinaryIO]


def _read_full(source: BinaryIO, size: int) -> bytes:
    """
    Lit exactement ``size`` octets, ou moins si la fin du flux est atteinte.

    Un ``read`` peut retourner moins que demandé sans être en fin de
    flux (pipes, sockets): on boucle jusqu'à remplir le buffer.
    """
    parts = []
    remaining = size
    while remaining > 0:
        data = source.read(remaining)
        if not data:
            break
        parts.append(data)
        remaining -= len(data)
    return b''.join(parts)


def _read_chunk(source: BinaryIO, index: int, chunk_size: int,
                path: Optional[str] = None) -> Optional[Chunk]:
    """
    Lit le chunk ``index`` depuis la position courante.

    Returns:
        Le chunk lu, ou None en fin de flux

    Raises:
        ChunkReadError: Si la lecture échoue
    """
    try:
        data = _read_full(source, chunk_size)
    except (OSError, ValueError) as e:
        raise ChunkReadError(
            f"Failed to read chunk {index}: {e}",
            path=path,
            chunk_index=index
        ) from e
    if not data:
        return None
    return Chunk.from_data(index, data)


def iter_chunks(source: BinaryIO, chunk_size: int = CHUNK_SIZE) -> Iterator[Chunk]:
    """
    Découpe un flux binaire en chunks, de façon synchrone.

    Chaque chunk fait exactement ``chunk_size`` octets sauf le dernier qui
    contient le reste. Un flux vide ne produit aucun chunk.

    Args:
        source: Objet fichier binaire ouvert en lecture
        chunk_size: Taille des chunks en bytes

    Yields:
        Les chunks dans l'ordre croissant des index

    Raises:
        ChunkReadError: Si une lecture échoue (les chunks déjà livrés restent valides)

    Example:
        >>> import io
        >>> list(iter_chunks(io.BytesIO(b'')))
        []
    """
    if chunk_size <= 0:
        raise ConfigurationError("Chunk size must be positive", {"chunk_size": chunk_size})

    index = 0
    while True:
        chunk = _read_chunk(source, index, chunk_size, getattr(source, 'name', None))
        if chunk is None:
            return
        yield chunk
        if chunk.size < chunk_size:
            return
        index += 1


class _Failure:
    """Élément terminal de la file portant l'erreur du producteur."""

    __slots__ = ('error',)

    def __init__(self, error: Exception):
        self.error = error


_END = object()


class ChunkStream:
    """
    Itérateur asynchrone de chunks alimenté par un producteur unique.

    Le producteur lit la source dans un thread (``asyncio.to_thread``) et
    dépose les chunks dans une ``asyncio.Queue`` bornée à ``lookahead``
    éléments. La fin du flux est signalée par une sentinelle; un échec
    d'ouverture ou de lecture est déposé comme élément terminal et levé
    par ``__anext__`` une fois les chunks précédents consommés.

    Attributes:
        source: Chemin du fichier ou objet fichier binaire
        lookahead: Nombre maximal de chunks en attente
        chunk_size: Taille des chunks
        chunks_produced: Nombre de chunks lus par le producteur

    Example:
        >>> import asyncio, io
        >>> async def sizes():
        ...     async with ChunkStream(io.BytesIO(b'abcdef'), chunk_size=4) as stream:
        ...         return [c.size async for c in stream]
        >>> asyncio.run(sizes())
        [4, 2]
    """

    def __init__(
        self,
        source: Source,
        lookahead: int = CHUNK_LOOKAHEAD,
        chunk_size: int = CHUNK_SIZE,
        logger: Optional[logging.Logger] = None
    ):
        if lookahead <= 0:
            raise ConfigurationError("Lookahead must be positive", {"lookahead": lookahead})
        if chunk_size <= 0:
            raise ConfigurationError("Chunk size must be positive", {"chunk_size": chunk_size})

        self.source = source
        self.lookahead = lookahead
        self.chunk_size = chunk_size
        self.chunks_produced = 0
        self.logger = logger or logging.getLogger(__name__)

        self._queue: Optional[asyncio.Queue] = None
        self._producer: Optional[asyncio.Task] = None
        self._finished = False

    # ========================================================================
    # PRODUCTEUR
    # ========================================================================

    def _open(self) -> Tuple[BinaryIO, bool, Optional[str]]:
        """Ouvre la source si c'est un chemin. Retourne (fichier, possédé, chemin)."""
        if isinstance(self.source, (str, os.PathLike)):
            path = os.fspath(self.source)
            try:
                return open(path, 'rb'), True, path
            except OSError as e:
                raise ChunkStorageError(
                    f"Cannot open source file: {e}",
                    path=path,
                    operation='open'
                ) from e
        return self.source, False, getattr(self.source, 'name', None)

    async def _produce(self) -> None:
        """Boucle du producteur: lit, hache et met en file jusqu'à la fin."""
        handle = None
        owned = False
        path = None
        index = 0
        try:
            handle, owned, path = await asyncio.to_thread(self._open)
            self.logger.debug(f"Début du découpage: {path or 'flux'}")

            while True:
                chunk = await asyncio.to_thread(
                    _read_chunk, handle, index, self.chunk_size, path
                )
                if chunk is None:
                    break
                await self._queue.put(chunk)
                self.chunks_produced += 1
                if chunk.size < self.chunk_size:
                    break
                index += 1

            self.logger.debug(f"Découpage terminé: {self.chunks_produced} chunks")
            await self._queue.put(_END)

        except ChunkStorageError as e:
            self.logger.error(f"Erreur de lecture de la source: {e}")
            await self._queue.put(_Failure(e))
        except Exception as e:
            self.logger.error(f"Erreur inattendue du producteur au chunk {index}: {e}")
            error = ChunkReadError(
                f"Failed to read chunk {index}: {e}",
                path=path,
                chunk_index=index
            )
            error.__cause__ = e
            await self._queue.put(_Failure(error))
        finally:
            if owned and handle is not None:
                handle.close()

    def _start(self) -> None:
        self._queue = asyncio.Queue(maxsize=self.lookahead)
        self._producer = asyncio.ensure_future(self._produce())

    # ========================================================================
    # PROTOCOLE D'ITÉRATION
    # ========================================================================

    def __aiter__(self) -> 'ChunkStream':
        return self

    async def __anext__(self) -> Chunk:
        if self._finished:
            raise StopAsyncIteration
        if self._producer is None:
            self._start()

        item = await self._queue.get()
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._finished = True
            raise item.error
        return item

    async def aclose(self) -> None:
        """Arrête le producteur et libère la source."""
        self._finished = True
        producer = self._producer
        if producer is not None and not producer.done():
            producer.cancel()
            try:
                await producer
            except asyncio.CancelledError:
                pass

    async def __aenter__(self) -> 'ChunkStream':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()


def stream_chunk_file(
    path: Union[str, os.PathLike],
    lookahead: int = CHUNK_LOOKAHEAD,
    logger: Optional[logging.Logger] = None
) -> ChunkStream:
    """
    Crée le flux de chunks d'un fichier.

    L'ouverture est faite par le producteur: un fichier introuvable est
    signalé comme erreur terminale au premier ``__anext__``.

    Args:
        path: Chemin du fichier à découper
        lookahead: Nombre de chunks lus d'avance

    Returns:
        ChunkStream à consommer avec ``async for``
    """
    return ChunkStream(path, lookahead=lookahead, logger=logger)


def verify_chunk(data: bytes, expected_hash: str) -> bool:
    """
    Vérifie l'intégrité d'un chunk avec son hash.

    Example:
        >>> verify_chunk(b'test data', compute_chunk_hash(b'test data'))
        True
    """
    return compute_chunk_hash(data) == expected_hash


def verify_shard(data: bytes, expected_hash: str) -> bool:
    """Vérifie l'intégrité d'un shard avec son hash déclaré."""
    return compute_chunk_hash(data) == expected_hash


def calculate_file_hash(path: Union[str, os.PathLike], block_size: int = CHUNK_SIZE) -> str:
    """
    Calcule le hash SHA-256 d'un fichier complet, bloc par bloc.

    Args:
        path: Chemin du fichier
        block_size: Taille des lectures

    Returns:
        Hash hexadécimal

    Raises:
        ChunkStorageError: Si le fichier ne peut pas être lu
    """
    hasher = hashlib.sha256()
    try:
        with open(path, 'rb') as f:
            for block in iter(lambda: f.read(block_size), b''):
                hasher.update(block)
    except OSError as e:
        raise ChunkStorageError(
            f"Cannot hash file: {e}",
            path=os.fspath(path),
            operation='read'
        ) from e
    return hasher.hexdigest()
