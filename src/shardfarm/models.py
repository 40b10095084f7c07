"""
Modèles de données pour le pipeline de publication shardfarm.

Ce module définit les dataclasses utilisées pour représenter les chunks,
les shards, les lignes du manifeste, les farmers, les messages d'upload
et les statistiques d'une publication ou d'une récupération.

Example:
    >>> from shardfarm.models import Chunk
    >>> chunk = Chunk.from_data(0, b'hello')
    >>> chunk.size
    5
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any
import hashlib
import threading
import time

from .config import DATA_SHARDS


def compute_chunk_hash(data: bytes) -> str:
    """
    Calcule le hash SHA-256 d'un chunk ou d'un shard.

    Args:
        data: Données à hacher

    Returns:
        Hash hexadécimal

    Example:
        >>> compute_chunk_hash(b'test data')
        '916f0027a575074ce72a331777c3478d6513f786a591bd892da1a577bf2335f9'
    """
    return hashlib.sha256(data).hexdigest()


@dataclass
class Chunk:
    """
    Tranche de taille fixe du fichier source.

    Les données sont transitoires: elles ne sont jamais persistées et sont
    relâchées dès que le chunk a été chiffré et découpé en shards.

    Attributes:
        index: Index du chunk (0-based, contigu)
        data: Octets du chunk
        hash: Hash SHA-256 des octets exacts de ``data``
        size: Taille en bytes

    Example:
        >>> chunk = Chunk.from_data(3, b'abc')
        >>> chunk.index, chunk.size
        (3, 3)
    """
    index: int
    data: bytes
    hash: str
    size: int

    @classmethod
    def from_data(cls, index: int, data: bytes) -> 'Chunk':
        """Construit un chunk en calculant son hash et sa taille."""
        return cls(index=index, data=data, hash=compute_chunk_hash(data), size=len(data))


@dataclass
class Shard:
    """
    Fragment erasure-coded du texte chiffré d'un chunk.

    Le hash est calculé une seule fois, juste après l'encodage, et n'est
    jamais recalculé ensuite.

    Attributes:
        chunk_index: Index du chunk d'origine
        shard_index: Index du shard (0..TOTAL_SHARDS-1)
        data: Octets du shard
        hash: Hash SHA-256 déclaré
        size: Taille en bytes
    """
    chunk_index: int
    shard_index: int
    data: bytes
    hash: str
    size: int

    @property
    def is_parity(self) -> bool:
        """Vrai pour les shards de parité (index >= DATA_SHARDS)."""
        return self.shard_index >= DATA_SHARDS

    def to_meta(self, farmer_index: int) -> 'ShardMeta':
        """Convertit en ligne de manifeste assignée à un farmer."""
        return ShardMeta(
            chunk_index=self.chunk_index,
            shard_index=self.shard_index,
            hash=self.hash,
            size=self.size,
            farmer_index=farmer_index,
        )


@dataclass(frozen=True)
class ChunkMeta:
    """
    Ligne de la table des chunks du manifeste.

    Attributes:
        index: Index du chunk
        hash: Hash SHA-256 du chunk en clair
        size: Taille du chunk en clair
        encrypted_size: Taille du texte chiffré (nonce + données + tag)
    """
    index: int
    hash: str
    size: int
    encrypted_size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convertit en dictionnaire pour sérialisation JSON."""
        return {
            'index': self.index,
            'hash': self.hash,
            'size': self.size,
            'encrypted_size': self.encrypted_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChunkMeta':
        """Crée une instance depuis un dictionnaire."""
        return cls(
            index=data['index'],
            hash=data['hash'],
            size=data['size'],
            encrypted_size=data.get('encrypted_size', 0),
        )


@dataclass(frozen=True)
class ShardMeta:
    """
    Ligne de la table des shards du manifeste.

    Attributes:
        chunk_index: Index du chunk d'origine
        shard_index: Index du shard
        hash: Hash SHA-256 du shard
        size: Taille du shard
        farmer_index: Index du farmer assigné dans l'annuaire du manifeste
    """
    chunk_index: int
    shard_index: int
    hash: str
    size: int
    farmer_index: int

    def to_dict(self) -> Dict[str, Any]:
        """Convertit en dictionnaire."""
        return {
            'chunk_index': self.chunk_index,
            'shard_index': self.shard_index,
            'hash': self.hash,
            'size': self.size,
            'farmer_index': self.farmer_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ShardMeta':
        """Crée une instance depuis un dictionnaire."""
        return cls(
            chunk_index=data['chunk_index'],
            shard_index=data['shard_index'],
            hash=data['hash'],
            size=data['size'],
            farmer_index=data['farmer_index'],
        )


@dataclass(frozen=True)
class FarmerInfo:
    """
    Noeud de stockage référencé par le manifeste.

    Attributes:
        index: Position stable dans l'annuaire des farmers
        address: Identité (clé de paiement) du farmer
        endpoint: Adresse réseau host:port
        region: Région déclarée

    Example:
        >>> farmer = FarmerInfo(index=0, address="0xF1", endpoint="127.0.0.1:7000")
        >>> farmer.endpoint
        '127.0.0.1:7000'
    """
    index: int
    address: str
    endpoint: str
    region: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convertit en dictionnaire."""
        return {
            'index': self.index,
            'address': self.address,
            'endpoint': self.endpoint,
            'region': self.region,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FarmerInfo':
        """Crée une instance depuis un dictionnaire."""
        return cls(
            index=data['index'],
            address=data.get('address', ''),
            endpoint=data['endpoint'],
            region=data.get('region', ''),
        )


@dataclass
class ShardUploadRequest:
    """
    Requête d'upload d'un shard vers un farmer.

    Attributes:
        blob_id: Identifiant du blob publié
        chunk_index: Index du chunk
        shard_index: Index du shard
        data: Octets du shard
        hash: Hash déclaré
        size: Taille déclarée
    """
    blob_id: str
    chunk_index: int
    shard_index: int
    data: bytes
    hash: str
    size: int

    @classmethod
    def from_shard(cls, blob_id: str, shard: Shard) -> 'ShardUploadRequest':
        """Construit la requête depuis un shard encodé."""
        return cls(
            blob_id=blob_id,
            chunk_index=shard.chunk_index,
            shard_index=shard.shard_index,
            data=shard.data,
            hash=shard.hash,
            size=shard.size,
        )


@dataclass
class ShardUploadResponse:
    """
    Réponse d'un farmer à un upload de shard.

    Attributes:
        status: 'ok' si le shard est stocké
        message: Message libre du farmer
        hash: Hash confirmé par le farmer
    """
    status: str
    message: str = ""
    hash: str = ""

    @property
    def ok(self) -> bool:
        return self.status == 'ok'

    def to_dict(self) -> Dict[str, Any]:
        """Convertit en dictionnaire."""
        return {'status': self.status, 'message': self.message, 'hash': self.hash}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ShardUploadResponse':
        """Crée une instance depuis un dictionnaire."""
        return cls(
            status=data.get('status', ''),
            message=data.get('message', ''),
            hash=data.get('hash', ''),
        )


@dataclass
class _RunStats:
    """
    Base des statistiques d'exécution partagées entre workers.

    Toutes les mutations passent par des méthodes protégées par un verrou.
    """
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: Optional[datetime] = None
    errors: List[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    _started: float = field(default_factory=time.monotonic, repr=False, compare=False)
    _elapsed: Optional[float] = field(default=None, repr=False, compare=False)

    def record_error(self, message: str) -> None:
        """Ajoute une erreur non fatale."""
        with self._lock:
            self.errors.append(message)

    def finish(self) -> None:
        """Fige la date de fin et la durée."""
        with self._lock:
            if self.end_time is None:
                self.end_time = datetime.now(timezone.utc)
                self._elapsed = time.monotonic() - self._started

    @property
    def elapsed(self) -> float:
        """Durée en secondes (jusqu'à maintenant si non terminée)."""
        if self._elapsed is not None:
            return self._elapsed
        return time.monotonic() - self._started

    def _base_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'start_time': self.start_time.isoformat(),
                'end_time': self.end_time.isoformat() if self.end_time else None,
                'elapsed_seconds': round(self.elapsed, 3),
                'errors': list(self.errors),
            }


@dataclass
class UploadStats(_RunStats):
    """
    Compteurs accumulés pendant une publication.

    Attributes:
        chunks_processed: Chunks chiffrés et découpés
        shards_created: Shards produits par l'erasure coding
        shards_uploaded: Shards confirmés par un farmer
        bytes_uploaded: Octets de shards confirmés
        errors: Erreurs non fatales (uploads de shards échoués)

    Example:
        >>> stats = UploadStats()
        >>> stats.record_chunk(6)
        >>> stats.record_upload(1024)
        >>> stats.shards_created, stats.bytes_uploaded
        (6, 1024)
    """
    chunks_processed: int = 0
    shards_created: int = 0
    shards_uploaded: int = 0
    bytes_uploaded: int = 0

    def record_chunk(self, shard_count: int) -> None:
        """Enregistre un chunk traité et ses shards."""
        with self._lock:
            self.chunks_processed += 1
            self.shards_created += shard_count

    def record_upload(self, size: int) -> None:
        """Enregistre un shard confirmé."""
        with self._lock:
            self.shards_uploaded += 1
            self.bytes_uploaded += size

    def to_dict(self) -> Dict[str, Any]:
        """Convertit en dictionnaire."""
        data = self._base_dict()
        with self._lock:
            data.update({
                'chunks_processed': self.chunks_processed,
                'shards_created': self.shards_created,
                'shards_uploaded': self.shards_uploaded,
                'bytes_uploaded': self.bytes_uploaded,
            })
        return data


@dataclass
class RetrievalStats(_RunStats):
    """
    Compteurs accumulés pendant une récupération.

    Attributes:
        chunks_recovered: Chunks reconstruits, déchiffrés et écrits
        shards_downloaded: Shards récupérés avec un hash valide
        bytes_downloaded: Octets de shards valides
    """
    chunks_recovered: int = 0
    shards_downloaded: int = 0
    bytes_downloaded: int = 0

    def record_download(self, size: int) -> None:
        with self._lock:
            self.shards_downloaded += 1
            self.bytes_downloaded += size

    def record_chunk(self) -> None:
        with self._lock:
            self.chunks_recovered += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convertit en dictionnaire."""
        data = self._base_dict()
        with self._lock:
            data.update({
                'chunks_recovered': self.chunks_recovered,
                'shards_downloaded': self.shards_downloaded,
                'bytes_downloaded': self.bytes_downloaded,
            })
        return data
