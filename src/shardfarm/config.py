"""
Configuration globale du pipeline de publication shardfarm.

Ce module contient les constantes du format (taille des chunks, paramètres
Reed-Solomon, taille de clé) et les paramètres ajustables par variables
d'environnement (parallélisme, timeouts réseau, stockage des farmers).

Les constantes du format ne sont PAS configurables: un manifeste publié
avec d'autres valeurs ne pourrait plus être relu par un autre client.

Example:
    >>> from shardfarm.config import SHARDFARM_CONFIG
    >>> SHARDFARM_CONFIG['CHUNK_SIZE']
    1048576
    >>> SHARDFARM_CONFIG['REED_SOLOMON']['K']
    4
"""

import os
import logging
from pathlib import Path
from typing import Dict, Any

# Logger pour ce module
logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTES DU FORMAT
# ============================================================================

CHUNK_SIZE = 1024 * 1024                     # 1 MiB
DATA_SHARDS = 4                              # Shards de données par chunk
PARITY_SHARDS = 2                            # Shards de parité par chunk
TOTAL_SHARDS = DATA_SHARDS + PARITY_SHARDS   # 6 shards, 4 suffisent
KEY_SIZE = 32                                # Clé symétrique de 256 bits
CHUNK_LOOKAHEAD = 4                          # Chunks lus d'avance par le chunker
MANIFEST_VERSION = "1.0"
GF_PRIMITIVE_POLY = 0x11d                    # Polynôme de GF(2^8)

SUPPORTED_CIPHERS = ('ChaCha20', 'AES-256')


def _get_env_int(key: str, default: int) -> int:
    """
    Récupère une variable d'environnement comme entier.

    Args:
        key: Nom de la variable d'environnement
        default: Valeur par défaut si non définie

    Returns:
        Valeur entière de la variable ou default

    Example:
        >>> import os
        >>> os.environ['TEST_VAR'] = '42'
        >>> _get_env_int('TEST_VAR', 10)
        42
        >>> _get_env_int('NONEXISTENT', 10)
        10
    """
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Variable d'environnement {key}={value} n'est pas un entier, "
                       f"utilisation de la valeur par défaut {default}")
        return default


def _get_env_float(key: str, default: float) -> float:
    """
    Récupère une variable d'environnement comme float.

    Args:
        key: Nom de la variable d'environnement
        default: Valeur par défaut si non définie

    Returns:
        Valeur float de la variable ou default
    """
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Variable d'environnement {key}={value} n'est pas un float, "
                       f"utilisation de la valeur par défaut {default}")
        return default


def _get_env_str(key: str, default: str) -> str:
    """Récupère une variable d'environnement comme string."""
    return os.environ.get(key, default)


def _get_env_cipher(key: str, default: str) -> str:
    """
    Récupère l'algorithme de chiffrement, en rejetant les valeurs inconnues.

    Example:
        >>> _get_env_cipher('NONEXISTENT', 'ChaCha20')
        'ChaCha20'
    """
    value = _get_env_str(key, default)
    if value not in SUPPORTED_CIPHERS:
        logger.warning(f"Variable d'environnement {key}={value} n'est pas un algorithme "
                       f"supporté {SUPPORTED_CIPHERS}, utilisation de {default}")
        return default
    return value


def _expand_path(path: str) -> str:
    """
    Étend un chemin avec ~ et variables d'environnement.

    Example:
        >>> _expand_path('~/.shardfarm')  # doctest: +ELLIPSIS
        '...'
    """
    return os.path.abspath(os.path.expanduser(os.path.expandvars(path)))


def _ensure_directory(path: str) -> str:
    """
    Crée un répertoire s'il n'existe pas.

    Raises:
        OSError: Si la création échoue
    """
    expanded = _expand_path(path)
    Path(expanded).mkdir(parents=True, exist_ok=True)
    return expanded


# ============================================================================
# CONFIGURATION PRINCIPALE
# ============================================================================

_STORAGE_DIR = _get_env_str('SHARDFARM_STORAGE_DIR', '~/.shardfarm/shards')

# Paramètres de publication
_PARALLELISM = _get_env_int('SHARDFARM_PARALLELISM', 4)
_CIPHER = _get_env_cipher('SHARDFARM_CIPHER', 'ChaCha20')

# Paramètres réseau
_RPC_TIMEOUT_SECONDS = _get_env_float('SHARDFARM_RPC_TIMEOUT', 30.0)
_MAX_CONNECTION_RETRIES = _get_env_int('SHARDFARM_MAX_RETRIES', 2)
_CONNECTION_RETRY_DELAY_SECONDS = _get_env_float('SHARDFARM_RETRY_DELAY', 1.0)
_MAX_MESSAGE_SIZE = _get_env_int('SHARDFARM_MAX_MESSAGE_SIZE', 16 * 1024 * 1024)


# Configuration complète exportée
SHARDFARM_CONFIG: Dict[str, Any] = {
    # === Chunking ===
    'CHUNK_SIZE': CHUNK_SIZE,
    'CHUNK_LOOKAHEAD': CHUNK_LOOKAHEAD,

    # === Reed-Solomon ===
    'REED_SOLOMON': {
        'K': DATA_SHARDS,              # Shards de données
        'M': PARITY_SHARDS,            # Shards de parité
        'TOTAL': TOTAL_SHARDS,         # Total des shards
        'MIN_RECOVERY': DATA_SHARDS,   # Minimum pour reconstruction
        'PRIMITIVE_POLY': GF_PRIMITIVE_POLY,
    },

    # === Chiffrement ===
    'ENCRYPTION': {
        'KEY_SIZE': KEY_SIZE,
        'ALGORITHM': _CIPHER,
        'SUPPORTED': list(SUPPORTED_CIPHERS),
    },

    # === Publication ===
    'UPLOAD': {
        'PARALLELISM': _PARALLELISM,
    },

    # === Réseau ===
    'NETWORK': {
        'RPC_TIMEOUT_SECONDS': _RPC_TIMEOUT_SECONDS,
        'MAX_CONNECTION_RETRIES': _MAX_CONNECTION_RETRIES,
        'CONNECTION_RETRY_DELAY_SECONDS': _CONNECTION_RETRY_DELAY_SECONDS,
        'MAX_MESSAGE_SIZE': _MAX_MESSAGE_SIZE,
    },

    # === Stockage côté farmer ===
    'STORAGE': {
        'DIR': _expand_path(_STORAGE_DIR),
    },

    # === Manifeste ===
    'MANIFEST': {
        'VERSION': MANIFEST_VERSION,
        'HASH': 'sha256',
    },
}


def get_config() -> Dict[str, Any]:
    """
    Retourne une copie de la configuration.

    Example:
        >>> config = get_config()
        >>> config['REED_SOLOMON']['TOTAL']
        6
    """
    return SHARDFARM_CONFIG.copy()


def get_storage_dir() -> str:
    """Retourne le répertoire de stockage des shards, le créant si nécessaire."""
    return _ensure_directory(SHARDFARM_CONFIG['STORAGE']['DIR'])


def log_config() -> None:
    """
    Log la configuration active pour le debug.

    Appelée au début de chaque publication pour tracer les paramètres actifs.
    """
    logger.info("=== Configuration shardfarm ===")
    logger.info(f"Taille des chunks: {SHARDFARM_CONFIG['CHUNK_SIZE']} bytes")
    logger.info(f"Reed-Solomon: K={SHARDFARM_CONFIG['REED_SOLOMON']['K']}, "
                f"M={SHARDFARM_CONFIG['REED_SOLOMON']['M']}")
    logger.info(f"Chiffrement: {SHARDFARM_CONFIG['ENCRYPTION']['ALGORITHM']}")
    logger.info(f"Parallélisme: {SHARDFARM_CONFIG['UPLOAD']['PARALLELISM']}")
    logger.info(f"Timeout RPC: {SHARDFARM_CONFIG['NETWORK']['RPC_TIMEOUT_SECONDS']}s")
    logger.info("===============================")
