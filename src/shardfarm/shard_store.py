"""
Stockage local des shards sur disque, côté farmer.

Structure du répertoire de stockage:
    ~/.shardfarm/shards/
    ├── {blob_id}/
    │   ├── 0_0.shard
    │   ├── 0_1.shard
    │   └── ...
    └── {blob_id2}/

Example:
    >>> import tempfile
    >>> from shardfarm.shard_store import ShardStore
    >>> store = ShardStore(tempfile.mkdtemp())
    >>> blob_id = "0x" + "ab" * 32
    >>> store.store_shard(blob_id, 0, 1, b"shard data")  # doctest: +ELLIPSIS
    '.../0_1.shard'
    >>> store.get_shard(blob_id, 0, 1)
    b'shard data'
"""

import os
import re
import shutil
import logging
import tempfile
from pathlib import Path
from typing import Optional, List, Tuple

from .exceptions import ChunkStorageError, ConfigurationError, InvalidShardIndexError

_BLOB_ID_RE = re.compile(r'^0x[0-9a-fA-F]{1,128}$')
_SHARD_NAME_RE = re.compile(r'^(\d+)_(\d+)\.shard$')


class ShardStore:
    """
    Gestionnaire de stockage des shards reçus par un farmer.

    Les écritures passent par un fichier temporaire renommé: un shard
    lisible est toujours complet.

    Attributes:
        storage_dir: Répertoire racine de stockage
        logger: Logger pour le debug
    """

    def __init__(self, storage_dir: str, logger: Optional[logging.Logger] = None):
        """
        Initialise le stockage.

        Args:
            storage_dir: Répertoire de stockage (étendu avec ~ et créé si nécessaire)
            logger: Logger optionnel

        Raises:
            ChunkStorageError: Si le répertoire ne peut pas être créé
        """
        self.storage_dir = os.path.abspath(os.path.expanduser(os.fspath(storage_dir)))
        self.logger = logger or logging.getLogger(__name__)

        try:
            Path(self.storage_dir).mkdir(parents=True, exist_ok=True)
            self.logger.info(f"ShardStore initialisé: {self.storage_dir}")
        except OSError as e:
            raise ChunkStorageError(
                f"Failed to create storage directory: {e}",
                path=self.storage_dir,
                operation="init"
            ) from e

    # ==========================================================================
    # CHEMINS
    # ==========================================================================

    def get_blob_dir(self, blob_id: str) -> str:
        """
        Retourne le répertoire d'un blob.

        Raises:
            ConfigurationError: Si blob_id n'est pas un identifiant hex "0x..."
        """
        if not isinstance(blob_id, str) or not _BLOB_ID_RE.match(blob_id):
            raise ConfigurationError("Invalid blob id", {"blob_id": blob_id})
        return os.path.join(self.storage_dir, blob_id.lower())

    def get_shard_path(self, blob_id: str, chunk_index: int, shard_index: int) -> str:
        """Retourne le chemin du fichier d'un shard."""
        if chunk_index < 0 or shard_index < 0:
            raise InvalidShardIndexError(
                "Negative chunk or shard index",
                chunk_index=chunk_index,
                shard_index=shard_index
            )
        return os.path.join(self.get_blob_dir(blob_id), f"{chunk_index}_{shard_index}.shard")

    # ==========================================================================
    # OPÉRATIONS
    # ==========================================================================

    def store_shard(self, blob_id: str, chunk_index: int, shard_index: int,
                    data: bytes) -> str:
        """
        Stocke un shard sur le disque (écrase une version précédente).

        Returns:
            Chemin absolu du fichier shard

        Raises:
            ChunkStorageError: Si l'écriture échoue
        """
        shard_path = self.get_shard_path(blob_id, chunk_index, shard_index)
        blob_dir = os.path.dirname(shard_path)

        try:
            Path(blob_dir).mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=blob_dir, suffix='.tmp')
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(data)
                os.replace(tmp_path, shard_path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        except OSError as e:
            raise ChunkStorageError(
                f"Failed to write shard: {e}",
                path=shard_path,
                operation="write"
            ) from e

        self.logger.debug(
            f"Shard stocké: {blob_id[:18]}#{chunk_index}/{shard_index} ({len(data)} bytes)"
        )
        return shard_path

    def get_shard(self, blob_id: str, chunk_index: int, shard_index: int) -> Optional[bytes]:
        """
        Lit un shard.

        Returns:
            Données du shard ou None si absent

        Raises:
            ChunkStorageError: Si le fichier existe mais ne peut pas être lu
        """
        shard_path = self.get_shard_path(blob_id, chunk_index, shard_index)
        try:
            with open(shard_path, 'rb') as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ChunkStorageError(
                f"Failed to read shard: {e}",
                path=shard_path,
                operation="read"
            ) from e

    def has_shard(self, blob_id: str, chunk_index: int, shard_index: int) -> bool:
        return os.path.isfile(self.get_shard_path(blob_id, chunk_index, shard_index))

    def list_shards(self, blob_id: str) -> List[Tuple[int, int]]:
        """
        Liste les shards stockés pour un blob.

        Returns:
            Liste triée de (chunk_index, shard_index)
        """
        blob_dir = self.get_blob_dir(blob_id)
        try:
            names = os.listdir(blob_dir)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise ChunkStorageError(
                f"Failed to list shards: {e}",
                path=blob_dir,
                operation="list"
            ) from e

        shards = []
        for name in names:
            match = _SHARD_NAME_RE.match(name)
            if match:
                shards.append((int(match.group(1)), int(match.group(2))))
        return sorted(shards)

    def delete_blob(self, blob_id: str) -> int:
        """
        Supprime tous les shards d'un blob.

        Returns:
            Nombre de shards supprimés
        """
        blob_dir = self.get_blob_dir(blob_id)
        if not os.path.isdir(blob_dir):
            return 0
        count = len(self.list_shards(blob_id))
        try:
            shutil.rmtree(blob_dir)
        except OSError as e:
            raise ChunkStorageError(
                f"Failed to delete blob: {e}",
                path=blob_dir,
                operation="delete"
            ) from e
        self.logger.info(f"Blob supprimé: {blob_id} ({count} shards)")
        return count
