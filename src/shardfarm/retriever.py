"""
Récupération d'un objet publié depuis son manifeste.

Pour chaque chunk (en parallèle borné):
    1. Récupère les shards dans l'ordre des index jusqu'à en avoir
       K (``data_shards``) dont le hash correspond au manifeste
    2. Reconstruit le texte chiffré (Reed-Solomon)
    3. Déchiffre et vérifie le hash du chunk en clair
    4. Écrit le chunk à son offset dans le fichier de sortie

Le fichier final est ensuite vérifié contre ``original_file_hash``.

Example:
    >>> import asyncio
    >>> from shardfarm.manifest import Manifest
    >>> from shardfarm.retriever import retrieve
    >>> # manifest = Manifest.load("photo.manifest.json")
    >>> # stats = asyncio.run(retrieve(manifest, "photo.jpg"))
"""

import asyncio
import logging
from typing import Optional, List, Union

from .config import SHARDFARM_CONFIG
from .chunker import calculate_file_hash
from .crypto import decrypt_chunk, encrypted_size
from .assembler import ChunkAssembler
from .exceptions import (
    ShardfarmException, ConfigurationError, RetrievalError, OperationCancelledError
)
from .farmer_rpc import FarmerClient, FarmerRPC
from .manifest import Manifest
from .models import Chunk, Shard, ChunkMeta, ShardMeta, RetrievalStats, compute_chunk_hash
from .reed_solomon import ReedSolomonEncoder, create_encoder


class Retriever:
    """
    Reconstruit un fichier depuis les farmers listés dans un manifeste.

    Attributes:
        manifest: Manifeste de l'objet à récupérer
        client: Client vers les farmers
        parallelism: Nombre de chunks récupérés en même temps
        stats: Statistiques de la récupération
    """

    def __init__(
        self,
        manifest: Manifest,
        client: FarmerClient,
        parallelism: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
        cancel_event: Optional[asyncio.Event] = None,
        encoder: Optional[ReedSolomonEncoder] = None,
        call_timeout: Optional[float] = None
    ):
        self.manifest = manifest
        self.client = client
        self.parallelism = parallelism if parallelism is not None \
            else SHARDFARM_CONFIG['UPLOAD']['PARALLELISM']
        self.logger = logger or logging.getLogger(__name__)
        self.cancel_event = cancel_event
        self.encoder = encoder or create_encoder(
            k=manifest.data_shards, m=manifest.parity_shards, logger=self.logger
        )
        self.call_timeout = call_timeout
        self.stats = RetrievalStats()

    def _is_cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def retrieve(self, output_path: str) -> RetrievalStats:
        """
        Récupère tous les chunks et écrit le fichier reconstruit.

        Args:
            output_path: Chemin du fichier à écrire (écrasé)

        Returns:
            Statistiques de la récupération

        Raises:
            ConfigurationError: Parallélisme invalide
            ManifestError: Manifeste incohérent ou clé illisible
            RetrievalError: Un chunk irrécupérable ou fichier final invalide
            OperationCancelledError: Signal d'annulation reçu
        """
        if self.parallelism <= 0:
            raise ConfigurationError("Parallelism must be positive",
                                     {"parallelism": self.parallelism})
        manifest = self.manifest
        manifest.validate()
        key = manifest.encryption_key_bytes()

        self.logger.info(
            f"Début de la récupération: {manifest.file_name} "
            f"({manifest.chunk_count} chunks, blob {manifest.blob_id[:18]}...)"
        )

        try:
            with ChunkAssembler(output_path, manifest.chunk_count, manifest.chunk_size,
                                self.logger) as assembler:
                semaphore = asyncio.Semaphore(self.parallelism)
                tasks = [
                    asyncio.ensure_future(self._recover_chunk(meta, key, assembler, semaphore))
                    for meta in manifest.chunks
                ]
                try:
                    await asyncio.gather(*tasks)
                finally:
                    for task in tasks:
                        task.cancel()
                    await asyncio.gather(*tasks, return_exceptions=True)
                assembler.finalize()

            file_hash = await asyncio.to_thread(calculate_file_hash, output_path)
            if file_hash != manifest.original_file_hash:
                raise RetrievalError(
                    "Reconstructed file does not match original hash",
                    {"expected": manifest.original_file_hash, "actual": file_hash}
                )
        except ShardfarmException as e:
            self.logger.error(f"Récupération échouée: {e}")
            raise
        finally:
            self.stats.finish()

        self.logger.info(
            f"Récupération terminée: {output_path} ({self.stats.chunks_recovered} chunks, "
            f"{self.stats.shards_downloaded} shards, {self.stats.elapsed:.2f}s)"
        )
        return self.stats

    # ==========================================================================
    # RÉCUPÉRATION D'UN CHUNK
    # ==========================================================================

    async def _recover_chunk(self, meta: ChunkMeta, key: bytes,
                             assembler: ChunkAssembler,
                             semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            if self._is_cancelled():
                raise OperationCancelledError(
                    "Retrieval cancelled",
                    {"chunks_recovered": self.stats.chunks_recovered}
                )

            shards = await self._collect_shards(meta.index)
            if len(shards) < self.encoder.k:
                raise RetrievalError(
                    f"Only {len(shards)} valid shard(s) available, need {self.encoder.k}",
                    chunk_index=meta.index
                )

            chunk = await asyncio.to_thread(self._open_chunk, meta, shards, key)
            await asyncio.to_thread(assembler.write, chunk)
            self.stats.record_chunk()
            self.logger.debug(f"Chunk {meta.index} récupéré ({chunk.size} bytes)")

    async def _collect_shards(self, chunk_index: int) -> List[Shard]:
        """
        Récupère des shards valides, par vagues, jusqu'à en avoir K (``encoder.k``).

        Un shard absent ou dont le hash ne correspond pas au manifeste est
        ignoré, le suivant dans l'ordre des index est tenté.
        """
        remaining = sorted(self.manifest.shards_for_chunk(chunk_index),
                           key=lambda s: s.shard_index)
        collected: List[Shard] = []

        while len(collected) < self.encoder.k and remaining:
            wave = remaining[:self.encoder.k - len(collected)]
            remaining = remaining[len(wave):]
            results = await asyncio.gather(*(self._fetch_shard(s) for s in wave))
            collected.extend(shard for shard in results if shard is not None)

        return collected

    async def _fetch_shard(self, shard_meta: ShardMeta) -> Optional[Shard]:
        label = f"shard {shard_meta.chunk_index}/{shard_meta.shard_index}"
        farmer = self.manifest.farmer_for_shard(shard_meta)
        if farmer is None:
            return self._record_failure(label, f"unknown farmer {shard_meta.farmer_index}")

        try:
            call = self.client.fetch_shard(farmer, self.manifest.blob_id,
                                           shard_meta.chunk_index, shard_meta.shard_index)
            if self.call_timeout is not None:
                data = await asyncio.wait_for(call, timeout=self.call_timeout)
            else:
                data = await call
        except asyncio.TimeoutError:
            return self._record_failure(f"{label} <- {farmer.endpoint}", "timeout")
        except (ShardfarmException, OSError) as e:
            return self._record_failure(f"{label} <- {farmer.endpoint}", str(e))
        except Exception as e:
            return self._record_failure(f"{label} <- {farmer.endpoint}",
                                        f"unexpected error: {e!r}")

        if compute_chunk_hash(data) != shard_meta.hash:
            return self._record_failure(f"{label} <- {farmer.endpoint}",
                                        "hash does not match manifest")

        self.stats.record_download(len(data))
        return Shard(
            chunk_index=shard_meta.chunk_index,
            shard_index=shard_meta.shard_index,
            data=data,
            hash=shard_meta.hash,
            size=len(data)
        )

    def _open_chunk(self, meta: ChunkMeta, shards: List[Shard], key: bytes) -> Chunk:
        """Reconstruit, déchiffre et vérifie un chunk (exécuté dans un thread)."""
        sealed_size = meta.encrypted_size or encrypted_size(meta.size)
        try:
            ciphertext = self.encoder.reconstruct_chunk(shards, sealed_size)
            plaintext = decrypt_chunk(ciphertext, key, self.manifest.encryption_algorithm)
        except ShardfarmException as e:
            raise RetrievalError(f"Cannot recover chunk: {e.message}",
                                 chunk_index=meta.index) from e

        chunk = Chunk.from_data(meta.index, plaintext)
        if chunk.hash != meta.hash or chunk.size != meta.size:
            raise RetrievalError("Chunk does not match manifest hash",
                                 chunk_index=meta.index)
        return chunk

    def _record_failure(self, label: str, reason: str) -> None:
        message = f"{label}: {reason}"
        self.stats.record_error(message)
        self.logger.warning(f"✗ {message}")
        return None


async def retrieve(
    manifest: Union[Manifest, str],
    output_path: str,
    client: Optional[FarmerClient] = None,
    parallelism: Optional[int] = None,
    logger: Optional[logging.Logger] = None,
    cancel_event: Optional[asyncio.Event] = None
) -> RetrievalStats:
    """
    Récupère un objet publié.

    Args:
        manifest: Manifeste ou chemin du fichier manifeste
        output_path: Fichier à écrire
        client: Client farmer (un FarmerRPC est créé et fermé sinon)

    Returns:
        Statistiques de la récupération
    """
    if not isinstance(manifest, Manifest):
        manifest = await asyncio.to_thread(Manifest.load, manifest)

    owned = client is None
    client = client or FarmerRPC(logger=logger)
    try:
        retriever = Retriever(manifest, client, parallelism=parallelism, logger=logger,
                              cancel_event=cancel_event)
        return await retriever.retrieve(output_path)
    finally:
        if owned:
            await client.close()
