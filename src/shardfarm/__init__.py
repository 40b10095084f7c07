"""
shardfarm: publication de fichiers chiffrés et erasure-coded sur des farmers.

Ce module fournit le pipeline complet de publication: découpage en chunks
de 1 MiB, chiffrement authentifié par chunk, Reed-Solomon RS(4, 2),
distribution parallèle des shards et manifeste durable. Le chemin inverse
(récupération, reconstruction, réassemblage) utilise les mêmes briques.

Composants principaux:
    - Uploader / publish: Orchestrateur de publication
    - Retriever / retrieve: Récupération depuis un manifeste
    - ChunkStream: Découpage en flux avec lecture anticipée bornée
    - ReedSolomonEncoder: Encodage/reconstruction RS(4, 2)
    - ChunkAssembler: Réassemblage de chunks arrivant dans le désordre
    - Manifest: Descripteur durable d'un objet publié
    - FarmerRPC: Client JSON-RPC vers les farmers
    - FarmerServer / ShardStore: Noeud de stockage

Configuration:
    Le module utilise des variables d'environnement pour la configuration:
    - SHARDFARM_PARALLELISM: Opérations concurrentes (défaut: 4)
    - SHARDFARM_CIPHER: ChaCha20 ou AES-256 (défaut: ChaCha20)
    - SHARDFARM_RPC_TIMEOUT: Timeout de base des appels (défaut: 30s)
    - SHARDFARM_MAX_RETRIES: Nouvelles tentatives de connexion (défaut: 2)
    - SHARDFARM_STORAGE_DIR: Stockage des shards côté farmer

Example:
    >>> import asyncio
    >>> from shardfarm import UploadConfig, publish
    >>>
    >>> async def main():
    ...     config = UploadConfig(
    ...         file_path="/path/to/file.pdf",
    ...         farmers=["10.0.0.1:7000", "10.0.0.2:7000", "10.0.0.3:7000"],
    ...         publisher_address="0xPublisher",
    ...         output_path="/path/to/file.manifest.json",
    ...     )
    ...     manifest, stats = await publish(config)
    ...     print(f"Blob: {manifest.blob_id}")
    >>>
    >>> asyncio.run(main())
"""

# Configuration
from .config import SHARDFARM_CONFIG, get_config

# Modèles de données
from .models import (
    Chunk,
    Shard,
    ChunkMeta,
    ShardMeta,
    FarmerInfo,
    ShardUploadRequest,
    ShardUploadResponse,
    UploadStats,
    RetrievalStats,
    compute_chunk_hash,
)

# Exceptions
from .exceptions import (
    ShardfarmException,
    ConfigurationError,
    InvalidKeyError,
    ChunkStorageError,
    ChunkReadError,
    ChunkEncodingError,
    SizeMismatchError,
    ChunkDecodingError,
    InsufficientShardsError,
    MixedChunksError,
    InvalidShardIndexError,
    DuplicateShardIndexError,
    ShardVerificationError,
    AuthenticationFailedError,
    ChunkOutOfBoundsError,
    IncompleteAssemblyError,
    FarmerCommunicationError,
    ShardNotFoundError,
    ManifestError,
    UploadError,
    RetrievalError,
    OperationCancelledError,
)

# Pipeline
from .chunker import ChunkStream, iter_chunks, stream_chunk_file, calculate_file_hash
from .crypto import generate_key, encrypt_chunk, decrypt_chunk
from .reed_solomon import ReedSolomonEncoder, create_encoder
from .assembler import ChunkAssembler, assemble_chunks
from .manifest import Manifest, build_farmer_directory
from .uploader import UploadConfig, UploadState, Uploader, publish
from .retriever import Retriever, retrieve

# Réseau
from .farmer_rpc import FarmerClient, FarmerRPC
from .farmer_net import FarmerServer
from .shard_store import ShardStore


__version__ = "1.0.0"

__all__ = [
    # Configuration
    "SHARDFARM_CONFIG",
    "get_config",

    # Modèles
    "Chunk",
    "Shard",
    "ChunkMeta",
    "ShardMeta",
    "FarmerInfo",
    "ShardUploadRequest",
    "ShardUploadResponse",
    "UploadStats",
    "RetrievalStats",
    "compute_chunk_hash",

    # Exceptions
    "ShardfarmException",
    "ConfigurationError",
    "InvalidKeyError",
    "ChunkStorageError",
    "ChunkReadError",
    "ChunkEncodingError",
    "SizeMismatchError",
    "ChunkDecodingError",
    "InsufficientShardsError",
    "MixedChunksError",
    "InvalidShardIndexError",
    "DuplicateShardIndexError",
    "ShardVerificationError",
    "AuthenticationFailedError",
    "ChunkOutOfBoundsError",
    "IncompleteAssemblyError",
    "FarmerCommunicationError",
    "ShardNotFoundError",
    "ManifestError",
    "UploadError",
    "RetrievalError",
    "OperationCancelledError",

    # Pipeline
    "ChunkStream",
    "iter_chunks",
    "stream_chunk_file",
    "calculate_file_hash",
    "generate_key",
    "encrypt_chunk",
    "decrypt_chunk",
    "ReedSolomonEncoder",
    "create_encoder",
    "ChunkAssembler",
    "assemble_chunks",
    "Manifest",
    "build_farmer_directory",
    "UploadConfig",
    "UploadState",
    "Uploader",
    "publish",
    "Retriever",
    "retrieve",

    # Réseau
    "FarmerClient",
    "FarmerRPC",
    "FarmerServer",
    "ShardStore",
]
