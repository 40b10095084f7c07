"""
Manifeste d'un objet publié.

Le manifeste est le descripteur durable d'une publication: identité du
blob, métadonnées du fichier, table des chunks, table des shards avec leur
farmer assigné, annuaire des farmers et clé de chiffrement (hex). Il est
construit une seule fois, puis immuable.

Format JSON (clés snake_case, champs inconnus ignorés au chargement):

    {
      "version": "1.0",
      "blob_id": "0x...",
      "file_name": "photo.jpg",
      "file_size": 3670016,
      "original_file_hash": "...",
      "chunk_size": 1048576,
      "chunk_count": 4,
      "data_shards": 4, "parity_shards": 2, "total_shards": 6,
      "chunks": [{"index": 0, "hash": "...", "size": 1048576, "encrypted_size": ...}],
      "shards": [{"chunk_index": 0, "shard_index": 0, "hash": "...", "size": ..., "farmer_index": 0}],
      "farmers": [{"index": 0, "address": "0x...", "endpoint": "host:port", "region": "eu"}],
      "encryption_key": "...",
      "encryption_algorithm": "ChaCha20",
      "publisher_address": "0x...",
      "created_at": "2024-01-01T00:00:00+00:00"
    }

Example:
    >>> from shardfarm.manifest import build_farmer_directory
    >>> [f.index for f in build_farmer_directory(["a:1", "b:2"])]
    [0, 1]
"""

import json
import logging
import os
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .config import (
    CHUNK_SIZE, DATA_SHARDS, PARITY_SHARDS, TOTAL_SHARDS, KEY_SIZE,
    MANIFEST_VERSION
)
from .exceptions import ManifestError, ConfigurationError
from .models import ChunkMeta, ShardMeta, FarmerInfo


logger = logging.getLogger(__name__)

_BLOB_ID_RE = re.compile(r'^0x[0-9a-f]{64}$')


def generate_blob_id() -> str:
    """
    Génère un identifiant de blob aléatoire de 256 bits.

    Example:
        >>> blob_id = generate_blob_id()
        >>> len(blob_id), blob_id[:2]
        (66, '0x')
    """
    return "0x" + secrets.token_hex(32)


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValueError(f"invalid timestamp: {value!r}")
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_farmer_directory(
    items: Iterable[Union[str, Sequence[str], FarmerInfo]]
) -> Tuple[FarmerInfo, ...]:
    """
    Construit l'annuaire des farmers avec des index stables (ordre d'entrée).

    Args:
        items: Triplets (address, endpoint, region), ou simples endpoints
            "host:port" quand l'identité n'est pas connue

    Returns:
        Tuple de FarmerInfo indexés de 0 à n-1

    Raises:
        ConfigurationError: Si un élément n'a pas une forme reconnue

    Example:
        >>> build_farmer_directory([("0xF1", "10.0.0.1:7000", "eu")])[0].region
        'eu'
    """
    directory = []
    for index, item in enumerate(items):
        if isinstance(item, FarmerInfo):
            address, endpoint, region = item.address, item.endpoint, item.region
        elif isinstance(item, str):
            address, endpoint, region = "", item, ""
        elif len(item) == 3:
            address, endpoint, region = item
        else:
            raise ConfigurationError(
                "Farmer entry must be an endpoint or an (address, endpoint, region) triple",
                {"index": index, "entry": repr(item)}
            )
        if not endpoint:
            raise ConfigurationError("Farmer endpoint is empty", {"index": index})
        directory.append(FarmerInfo(index=index, address=address, endpoint=endpoint,
                                    region=region))
    return tuple(directory)


@dataclass(frozen=True)
class Manifest:
    """
    Descripteur immuable d'un objet publié.

    Attributes:
        version: Version du format
        blob_id: Identifiant aléatoire "0x" + 64 caractères hex
        file_name: Nom du fichier d'origine
        file_size: Taille du fichier en bytes
        original_file_hash: SHA-256 du fichier complet
        chunk_size: Taille nominale des chunks
        chunk_count: Nombre de chunks
        data_shards: Shards de données par chunk (K)
        parity_shards: Shards de parité par chunk (M)
        total_shards: K + M
        chunks: Table des chunks
        shards: Table des shards (ordre d'insertion)
        farmers: Annuaire des farmers
        encryption_key: Clé symétrique encodée en hex
        encryption_algorithm: 'ChaCha20' ou 'AES-256'
        publisher_address: Adresse du publieur
        created_at: Date de création (UTC)
    """
    blob_id: str
    file_name: str
    file_size: int
    original_file_hash: str
    chunks: Tuple[ChunkMeta, ...]
    shards: Tuple[ShardMeta, ...]
    farmers: Tuple[FarmerInfo, ...]
    encryption_key: str
    publisher_address: str
    version: str = MANIFEST_VERSION
    chunk_size: int = CHUNK_SIZE
    chunk_count: int = 0
    data_shards: int = DATA_SHARDS
    parity_shards: int = PARITY_SHARDS
    total_shards: int = TOTAL_SHARDS
    encryption_algorithm: str = 'ChaCha20'
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    _shards_by_chunk: Dict[int, Tuple[ShardMeta, ...]] = field(
        default=None, init=False, repr=False, compare=False
    )
    _chunks_by_index: Dict[int, ChunkMeta] = field(
        default=None, init=False, repr=False, compare=False
    )

    def __post_init__(self):
        object.__setattr__(self, 'chunks', tuple(self.chunks))
        object.__setattr__(self, 'shards', tuple(self.shards))
        object.__setattr__(self, 'farmers', tuple(self.farmers))

        grouped: Dict[int, List[ShardMeta]] = {}
        for shard in self.shards:
            grouped.setdefault(shard.chunk_index, []).append(shard)
        object.__setattr__(self, '_shards_by_chunk',
                           {k: tuple(v) for k, v in grouped.items()})
        object.__setattr__(self, '_chunks_by_index', {c.index: c for c in self.chunks})

    @classmethod
    def new(
        cls,
        file_name: str,
        file_size: int,
        original_hash: str,
        chunks: Sequence[ChunkMeta],
        shards: Sequence[ShardMeta],
        farmers: Sequence[FarmerInfo],
        encryption_key: bytes,
        publisher_address: str,
        encryption_algorithm: str = 'ChaCha20',
        data_shards: int = DATA_SHARDS,
        parity_shards: int = PARITY_SHARDS
    ) -> 'Manifest':
        """
        Construit un manifeste avec un blob_id aléatoire frais.

        Args:
            file_name: Nom du fichier publié
            file_size: Taille du fichier
            original_hash: SHA-256 du fichier complet
            chunks: Lignes de la table des chunks
            shards: Lignes de la table des shards
            farmers: Annuaire des farmers
            encryption_key: Clé brute (stockée en hex)
            publisher_address: Adresse du publieur
            encryption_algorithm: Algorithme AEAD utilisé
            data_shards: K de l'encodeur utilisé
            parity_shards: M de l'encodeur utilisé

        Returns:
            Manifeste immuable
        """
        return cls(
            blob_id=generate_blob_id(),
            file_name=file_name,
            file_size=file_size,
            original_file_hash=original_hash,
            chunks=tuple(chunks),
            shards=tuple(shards),
            farmers=tuple(farmers),
            encryption_key=bytes(encryption_key).hex(),
            publisher_address=publisher_address,
            chunk_count=len(chunks),
            data_shards=data_shards,
            parity_shards=parity_shards,
            total_shards=data_shards + parity_shards,
            encryption_algorithm=encryption_algorithm,
        )

    # ========================================================================
    # REQUÊTES
    # ========================================================================

    def chunk_meta(self, index: int) -> Optional[ChunkMeta]:
        """Ligne de la table des chunks, ou None si l'index est inconnu."""
        return self._chunks_by_index.get(index)

    def chunk_hash(self, index: int) -> Optional[str]:
        """
        Hash du chunk en clair, ou None si l'index est inconnu.
        """
        meta = self._chunks_by_index.get(index)
        return meta.hash if meta is not None else None

    def shards_for_chunk(self, chunk_index: int) -> List[ShardMeta]:
        """Shards d'un chunk, dans l'ordre d'insertion."""
        return list(self._shards_by_chunk.get(chunk_index, ()))

    def farmer_for_shard(self, shard: ShardMeta) -> Optional[FarmerInfo]:
        """Farmer assigné à un shard, ou None si l'index est négatif ou hors limites."""
        if 0 <= shard.farmer_index < len(self.farmers):
            return self.farmers[shard.farmer_index]
        return None

    def farmers_for_chunk(self, chunk_index: int) -> List[FarmerInfo]:
        """
        Farmers des shards d'un chunk, sans doublon, dans l'ordre de première apparition.
        """
        seen: Dict[int, FarmerInfo] = {}
        for shard in self._shards_by_chunk.get(chunk_index, ()):
            farmer = self.farmer_for_shard(shard)
            if farmer is not None and shard.farmer_index not in seen:
                seen[shard.farmer_index] = farmer
        return list(seen.values())

    def encryption_key_bytes(self) -> bytes:
        """
        Décode la clé de chiffrement.

        Raises:
            ManifestError: Si l'encodage stocké est invalide
        """
        try:
            return bytes.fromhex(self.encryption_key)
        except ValueError as e:
            raise ManifestError("Malformed encryption key encoding",
                                {"blob_id": self.blob_id}) from e

    # ========================================================================
    # VALIDATION
    # ========================================================================

    def validate(self) -> None:
        """
        Vérifie les références croisées du manifeste.

        Raises:
            ManifestError: Au premier invariant violé
        """
        def fail(message: str, **details):
            raise ManifestError(message, dict(details, blob_id=self.blob_id))

        if not _BLOB_ID_RE.match(self.blob_id):
            fail("Invalid blob id")
        if self.total_shards != self.data_shards + self.parity_shards:
            fail("total_shards must equal data_shards + parity_shards",
                 total_shards=self.total_shards)
        if self.chunk_count != len(self.chunks):
            fail("chunk_count does not match chunk table",
                 chunk_count=self.chunk_count, chunks=len(self.chunks))
        if sorted(c.index for c in self.chunks) != list(range(len(self.chunks))):
            fail("Chunk indices must be contiguous from 0")
        if sum(c.size for c in self.chunks) != self.file_size:
            fail("Chunk sizes do not add up to file size", file_size=self.file_size)
        for position, farmer in enumerate(self.farmers):
            if farmer.index != position:
                fail("Farmer index does not match its position",
                     position=position, index=farmer.index)

        for shard in self.shards:
            if shard.chunk_index not in self._chunks_by_index:
                fail("Shard references unknown chunk",
                     chunk_index=shard.chunk_index, shard_index=shard.shard_index)
            if self.farmer_for_shard(shard) is None:
                fail("Shard references unknown farmer",
                     chunk_index=shard.chunk_index, shard_index=shard.shard_index,
                     farmer_index=shard.farmer_index)

        expected = list(range(self.total_shards))
        for chunk in self.chunks:
            indices = sorted(s.shard_index for s in self._shards_by_chunk.get(chunk.index, ()))
            if indices != expected:
                fail("Chunk does not have a complete set of shards",
                     chunk_index=chunk.index, shard_indices=indices)

        key = self.encryption_key_bytes()
        if len(key) != KEY_SIZE:
            fail("Encryption key has wrong length", length=len(key))

    # ========================================================================
    # SÉRIALISATION
    # ========================================================================

    def to_dict(self) -> Dict[str, Any]:
        """Convertit en dictionnaire pour sérialisation JSON."""
        return {
            'version': self.version,
            'blob_id': self.blob_id,
            'file_name': self.file_name,
            'file_size': self.file_size,
            'original_file_hash': self.original_file_hash,
            'chunk_size': self.chunk_size,
            'chunk_count': self.chunk_count,
            'data_shards': self.data_shards,
            'parity_shards': self.parity_shards,
            'total_shards': self.total_shards,
            'chunks': [c.to_dict() for c in self.chunks],
            'shards': [s.to_dict() for s in self.shards],
            'farmers': [f.to_dict() for f in self.farmers],
            'encryption_key': self.encryption_key,
            'encryption_algorithm': self.encryption_algorithm,
            'publisher_address': self.publisher_address,
            'created_at': self.created_at.isoformat(),
        }

    def to_json(self) -> str:
        """Sérialise en JSON lisible."""
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Manifest':
        """
        Crée une instance depuis un dictionnaire.

        Les champs inconnus sont ignorés.

        Raises:
            ManifestError: Si un champ requis manque ou est mal typé
        """
        try:
            chunks = tuple(ChunkMeta.from_dict(c) for c in data.get('chunks', []))
            return cls(
                version=data.get('version', MANIFEST_VERSION),
                blob_id=data['blob_id'],
                file_name=data.get('file_name', ''),
                file_size=data['file_size'],
                original_file_hash=data['original_file_hash'],
                chunk_size=data.get('chunk_size', CHUNK_SIZE),
                chunk_count=data.get('chunk_count', len(chunks)),
                data_shards=data.get('data_shards', DATA_SHARDS),
                parity_shards=data.get('parity_shards', PARITY_SHARDS),
                total_shards=data.get('total_shards', TOTAL_SHARDS),
                chunks=chunks,
                shards=tuple(ShardMeta.from_dict(s) for s in data.get('shards', [])),
                farmers=tuple(FarmerInfo.from_dict(f) for f in data.get('farmers', [])),
                encryption_key=data['encryption_key'],
                encryption_algorithm=data.get('encryption_algorithm', 'ChaCha20'),
                publisher_address=data.get('publisher_address', ''),
                created_at=_parse_datetime(data['created_at']),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ManifestError(f"Invalid manifest document: {e!r}") from e

    @classmethod
    def from_json(cls, json_str: str) -> 'Manifest':
        """
        Désérialise depuis JSON.

        Raises:
            ManifestError: Si le JSON est invalide
        """
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ManifestError(f"Manifest is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ManifestError("Manifest document must be a JSON object")
        return cls.from_dict(data)

    def save(self, path: str) -> str:
        """
        Écrit le manifeste en JSON.

        L'écriture passe par un fichier temporaire renommé, un lecteur ne
        voit jamais un manifeste à moitié écrit.

        Returns:
            Chemin absolu du manifeste

        Raises:
            ManifestError: Si l'écriture échoue
        """
        path = os.path.abspath(os.fspath(path))
        tmp_path = f"{path}.tmp"
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                f.write(self.to_json())
            os.replace(tmp_path, path)
        except OSError as e:
            raise ManifestError(f"Failed to write manifest: {e}", path=path) from e
        logger.debug(f"Manifeste sauvegardé: {path}")
        return path

    @classmethod
    def load(cls, path: str) -> 'Manifest':
        """
        Lit et valide un manifeste.

        Raises:
            ManifestError: Lecture, parsing ou validation en échec
        """
        path = os.fspath(path)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                json_str = f.read()
        except OSError as e:
            raise ManifestError(f"Failed to read manifest: {e}", path=path) from e

        manifest = cls.from_json(json_str)
        manifest.validate()
        return manifest
