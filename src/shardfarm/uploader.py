"""
Orchestrateur de publication.

Ce module compose tout le pipeline de publication:
- Validation de la configuration
- Hash du fichier complet et génération de la clé
- Découpage en chunks, chiffrement et erasure coding (en parallèle borné)
- Construction du manifeste avec l'assignation des shards aux farmers
- Distribution parallèle des shards, tolérante aux pannes partielles
- Sauvegarde du manifeste

Un chunk est considéré publié dès qu'au moins K de ses shards
ont été confirmés. En dessous, la publication entière échoue: le chunk
ne pourrait jamais être reconstruit.

Example:
    >>> import asyncio
    >>> from shardfarm.uploader import UploadConfig, publish
    >>> config = UploadConfig(
    ...     file_path="photo.jpg",
    ...     farmers=["10.0.0.1:7000", "10.0.0.2:7000"],
    ...     publisher_address="0xPublisher",
    ...     output_path="photo.manifest.json"
    ... )
    >>> # manifest, stats = asyncio.run(publish(config))
"""

import os
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Tuple, Sequence, Any

from .config import (
    SHARDFARM_CONFIG, SUPPORTED_CIPHERS, log_config
)
from .chunker import stream_chunk_file, calculate_file_hash
from .crypto import generate_key, encrypt_chunk
from .exceptions import (
    ShardfarmException, ConfigurationError, ChunkStorageError,
    UploadError, OperationCancelledError
)
from .farmer_rpc import FarmerClient, FarmerRPC
from .manifest import Manifest, build_farmer_directory
from .models import (
    Chunk, Shard, ChunkMeta, FarmerInfo, ShardUploadRequest,
    UploadStats
)
from .reed_solomon import ReedSolomonEncoder, create_encoder


class UploadState(Enum):
    """États de l'orchestrateur, parcourus dans cet ordre."""
    VALIDATING = 'validating'
    HASHING = 'hashing'
    KEY_GENERATION = 'key_generation'
    PROCESSING = 'processing'
    MANIFEST_BUILDING = 'manifest_building'
    DISTRIBUTING = 'distributing'
    PERSISTING = 'persisting'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class UploadConfig:
    """
    Paramètres d'une publication.

    Attributes:
        file_path: Fichier à publier
        farmers: Endpoints "host:port" ou triplets (address, endpoint, region)
        publisher_address: Adresse du publieur
        output_path: Chemin du manifeste à écrire
        parallelism: Nombre d'opérations concurrentes
        encryption_algorithm: 'ChaCha20' ou 'AES-256'
    """
    file_path: str
    farmers: Sequence[Any]
    publisher_address: str
    output_path: str
    parallelism: int = field(
        default_factory=lambda: SHARDFARM_CONFIG['UPLOAD']['PARALLELISM']
    )
    encryption_algorithm: str = field(
        default_factory=lambda: SHARDFARM_CONFIG['ENCRYPTION']['ALGORITHM']
    )

    def validate(self) -> None:
        """
        Vérifie la configuration avant tout traitement.

        Raises:
            ConfigurationError: Au premier paramètre invalide
        """
        if not self.file_path:
            raise ConfigurationError("File path is required")
        if not self.farmers:
            raise ConfigurationError("At least one farmer endpoint is required")
        if not self.output_path:
            raise ConfigurationError("Manifest output path is required")
        if not isinstance(self.parallelism, int) or self.parallelism <= 0:
            raise ConfigurationError("Parallelism must be positive",
                                     {"parallelism": self.parallelism})
        if self.encryption_algorithm not in SUPPORTED_CIPHERS:
            raise ConfigurationError("Unsupported encryption algorithm",
                                     {"algorithm": self.encryption_algorithm})


def assign_farmer(chunk_index: int, shard_index: int, farmer_count: int) -> int:
    """
    Placement déterministe d'un shard.

    Les shards d'un même chunk tombent sur des farmers distincts dès
    qu'il y a au moins TOTAL_SHARDS farmers.

    Example:
        >>> [assign_farmer(1, s, 6) for s in range(6)]
        [1, 2, 3, 4, 5, 0]
    """
    return (chunk_index + shard_index) % farmer_count


class Uploader:
    """
    Exécute une publication, une seule fois par instance.

    Attributes:
        config: Paramètres de la publication
        client: Client vers les farmers
        state: État courant
        transitions: Historique des états traversés
        stats: Statistiques de la publication
        manifest: Manifeste construit (None avant MANIFEST_BUILDING)
    """

    def __init__(
        self,
        config: UploadConfig,
        client: FarmerClient,
        logger: Optional[logging.Logger] = None,
        cancel_event: Optional[asyncio.Event] = None,
        encoder: Optional[ReedSolomonEncoder] = None,
        call_timeout: Optional[float] = None
    ):
        """
        Args:
            config: Paramètres de la publication
            client: Client vers les farmers (FarmerRPC ou équivalent)
            logger: Logger optionnel
            cancel_event: Signal d'annulation (objet avec ``is_set()``)
            encoder: Encodeur Reed-Solomon (défaut: configuration)
            call_timeout: Timeout par upload de shard, en plus de celui du transport
        """
        self.config = config
        self.client = client
        self.logger = logger or logging.getLogger(__name__)
        self.cancel_event = cancel_event
        self.encoder = encoder or create_encoder(logger=self.logger)
        self.call_timeout = call_timeout

        self.state: Optional[UploadState] = None
        self.transitions: List[UploadState] = []
        self.error: Optional[BaseException] = None
        self.stats = UploadStats()
        self.manifest: Optional[Manifest] = None

    # ==========================================================================
    # MACHINE À ÉTATS
    # ==========================================================================

    def _transition(self, state: UploadState) -> None:
        if state in self.transitions:
            raise RuntimeError(f"Upload state {state.value} cannot be re-entered")
        self.transitions.append(state)
        self.state = state
        self.logger.info(f"Publication: {state.value}")

    def _fail(self, error: BaseException) -> None:
        self.error = error
        if self.state is not UploadState.FAILED:
            self.transitions.append(UploadState.FAILED)
            self.state = UploadState.FAILED
        self.logger.error(f"Publication échouée: {error}")

    def _is_cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _check_cancelled(self) -> None:
        if self._is_cancelled():
            raise OperationCancelledError("Upload cancelled", {"state": self.state.value})

    async def upload(self) -> Tuple[Manifest, UploadStats]:
        """
        Exécute la publication complète.

        Returns:
            (manifeste, statistiques)

        Raises:
            ConfigurationError: Configuration invalide
            ChunkStorageError: Lecture du fichier en échec
            ManifestError: Écriture du manifeste en échec
            UploadError: Un chunk a moins de K shards confirmés
            OperationCancelledError: Signal d'annulation reçu
        """
        if self.transitions:
            raise RuntimeError("An Uploader instance runs only once")

        try:
            self._transition(UploadState.VALIDATING)
            self.config.validate()
            farmers = build_farmer_directory(self.config.farmers)
            log_config()
            self.logger.info(
                f"Début de la publication: {os.path.basename(self.config.file_path)} "
                f"vers {len(farmers)} farmers"
            )

            self._transition(UploadState.HASHING)
            file_hash, file_size = await asyncio.to_thread(self._hash_file)
            self.logger.info(f"Hash du fichier: {file_hash[:16]}... ({file_size} bytes)")

            self._transition(UploadState.KEY_GENERATION)
            key = generate_key()

            self._transition(UploadState.PROCESSING)
            chunk_metas, shards = await self._process(key)
            self.logger.info(f"Traitement terminé: {len(chunk_metas)} chunks -> {len(shards)} shards")

            self._transition(UploadState.MANIFEST_BUILDING)
            manifest = self._build_manifest(file_hash, file_size, chunk_metas, shards,
                                            farmers, key)
            self.manifest = manifest
            self.logger.info(f"Manifeste créé (blob {manifest.blob_id[:18]}...)")

            self._transition(UploadState.DISTRIBUTING)
            await self._distribute(manifest, shards)

            self._transition(UploadState.PERSISTING)
            path = await asyncio.to_thread(manifest.save, self.config.output_path)
            self.logger.info(f"Manifeste sauvegardé: {path}")

            self.stats.finish()
            self._transition(UploadState.DONE)
            self.logger.info(f"Statistiques: {self.stats.to_dict()}")
            return manifest, self.stats

        except Exception as e:
            self.stats.finish()
            self._fail(e)
            raise

    # ==========================================================================
    # ÉTAPES
    # ==========================================================================

    def _hash_file(self) -> Tuple[str, int]:
        file_hash = calculate_file_hash(self.config.file_path)
        try:
            file_size = os.path.getsize(self.config.file_path)
        except OSError as e:
            raise ChunkStorageError(f"Cannot stat file: {e}", path=self.config.file_path,
                                    operation='stat') from e
        return file_hash, file_size

    def _seal_chunk(self, chunk: Chunk, key: bytes) -> Tuple[ChunkMeta, List[Shard]]:
        """Chiffre un chunk puis le découpe en shards (exécuté dans un thread)."""
        ciphertext = encrypt_chunk(chunk.data, key, self.config.encryption_algorithm)
        sealed = Chunk.from_data(chunk.index, ciphertext)
        shards = self.encoder.split_chunk(sealed, ciphertext)
        meta = ChunkMeta(index=chunk.index, hash=chunk.hash, size=chunk.size,
                         encrypted_size=len(ciphertext))
        return meta, shards

    async def _process(self, key: bytes) -> Tuple[List[ChunkMeta], List[Shard]]:
        """
        Découpe, chiffre et encode tous les chunks.

        Au plus ``parallelism`` chunks sont en cours de traitement; le
        premier échec interrompt l'étape.
        """
        semaphore = asyncio.Semaphore(self.config.parallelism)
        results: Dict[int, Tuple[ChunkMeta, List[Shard]]] = {}
        pending = set()

        async def process_one(chunk: Chunk) -> None:
            try:
                meta, shards = await asyncio.to_thread(self._seal_chunk, chunk, key)
                results[chunk.index] = (meta, shards)
                self.stats.record_chunk(len(shards))
                self.logger.debug(f"Chunk {chunk.index} traité ({chunk.size} bytes)")
            finally:
                semaphore.release()

        lookahead = SHARDFARM_CONFIG['CHUNK_LOOKAHEAD']
        async with stream_chunk_file(self.config.file_path, lookahead, self.logger) as stream:
            try:
                async for chunk in stream:
                    await semaphore.acquire()
                    if self._is_cancelled():
                        semaphore.release()
                        self._check_cancelled()
                    pending.add(asyncio.ensure_future(process_one(chunk)))

                    for task in [t for t in pending if t.done()]:
                        pending.discard(task)
                        task.result()

                if pending:
                    await asyncio.gather(*pending)
            finally:
                for task in pending:
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)

        indices = sorted(results)
        chunk_metas = [results[i][0] for i in indices]
        shards = [shard for i in indices for shard in results[i][1]]
        return chunk_metas, shards

    def _build_manifest(self, file_hash: str, file_size: int,
                        chunk_metas: List[ChunkMeta], shards: List[Shard],
                        farmers: Tuple[FarmerInfo, ...], key: bytes) -> Manifest:
        shard_metas = [
            shard.to_meta(assign_farmer(shard.chunk_index, shard.shard_index, len(farmers)))
            for shard in shards
        ]
        manifest = Manifest.new(
            file_name=os.path.basename(self.config.file_path),
            file_size=file_size,
            original_hash=file_hash,
            chunks=chunk_metas,
            shards=shard_metas,
            farmers=farmers,
            encryption_key=key,
            publisher_address=self.config.publisher_address,
            encryption_algorithm=self.config.encryption_algorithm,
            data_shards=self.encoder.k,
            parity_shards=self.encoder.m,
        )
        # Le fichier a pu changer entre le hash et le découpage
        manifest.validate()
        return manifest

    async def _distribute(self, manifest: Manifest, shards: List[Shard]) -> None:
        """
        Envoie tous les shards à leurs farmers avec un pool borné.

        Raises:
            OperationCancelledError: Si l'annulation a été demandée
            UploadError: Si un chunk a moins de K shards confirmés
        """
        semaphore = asyncio.Semaphore(self.config.parallelism)
        confirmed: Dict[int, int] = {meta.index: 0 for meta in manifest.chunks}
        skipped = 0

        async def upload_one(shard: Shard, farmer: FarmerInfo) -> None:
            nonlocal skipped
            async with semaphore:
                if self._is_cancelled():
                    skipped += 1
                    return
                ok = await self._upload_shard(manifest.blob_id, shard, farmer)
                if ok:
                    confirmed[shard.chunk_index] += 1

        tasks = [
            asyncio.ensure_future(upload_one(shard, manifest.farmers[meta.farmer_index]))
            for shard, meta in zip(shards, manifest.shards)
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if self._is_cancelled():
            raise OperationCancelledError(
                "Upload cancelled during distribution",
                {"shards_uploaded": self.stats.shards_uploaded, "shards_skipped": skipped}
            )

        for chunk_index, count in sorted(confirmed.items()):
            if count < self.encoder.k:
                raise UploadError(
                    f"Chunk {chunk_index} cannot be reconstructed: "
                    f"only {count} shard(s) confirmed",
                    chunk_index=chunk_index,
                    confirmed=count,
                    required=self.encoder.k
                )

        self.logger.info(
            f"Distribution terminée: {self.stats.shards_uploaded}/{len(shards)} shards confirmés"
        )

    async def _upload_shard(self, blob_id: str, shard: Shard, farmer: FarmerInfo) -> bool:
        """
        Envoie un shard. Un échec est enregistré dans les statistiques.

        Returns:
            True si le farmer a confirmé le bon hash
        """
        request = ShardUploadRequest.from_shard(blob_id, shard)
        label = f"shard {shard.chunk_index}/{shard.shard_index} -> {farmer.endpoint}"
        try:
            call = self.client.upload_shard(farmer, request)
            if self.call_timeout is not None:
                response = await asyncio.wait_for(call, timeout=self.call_timeout)
            else:
                response = await call
        except asyncio.TimeoutError:
            return self._record_failure(label, "timeout")
        except (ShardfarmException, OSError) as e:
            return self._record_failure(label, str(e))
        except Exception as e:
            return self._record_failure(label, f"unexpected error: {e!r}")

        if not response.ok:
            return self._record_failure(label, f"status={response.status} {response.message}")
        if response.hash != shard.hash:
            return self._record_failure(label, "confirmed hash does not match")

        self.stats.record_upload(shard.size)
        self.logger.debug(f"✓ {label}")
        return True

    def _record_failure(self, label: str, reason: str) -> bool:
        message = f"{label}: {reason}"
        self.stats.record_error(message)
        self.logger.warning(f"✗ {message}")
        return False


async def publish(
    config: UploadConfig,
    client: Optional[FarmerClient] = None,
    logger: Optional[logging.Logger] = None,
    cancel_event: Optional[asyncio.Event] = None
) -> Tuple[Manifest, UploadStats]:
    """
    Publie un fichier.

    Si aucun client n'est fourni, un FarmerRPC est créé et fermé à la fin.

    Returns:
        (manifeste, statistiques)
    """
    owned = client is None
    client = client or FarmerRPC(logger=logger)
    try:
        uploader = Uploader(config, client, logger=logger, cancel_event=cancel_event)
        return await uploader.upload()
    finally:
        if owned:
            await client.close()
