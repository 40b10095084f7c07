"""
Exceptions personnalisées pour le pipeline shardfarm.

Ce module définit une hiérarchie d'exceptions spécifiques au pipeline
(chunking, chiffrement, erasure coding, distribution, récupération).

Chaque classe porte un attribut ``kind`` stable qui permet de trier les
erreurs sans comparer les messages. La cause d'origine est chaînée avec
``raise ... from err`` et reste disponible dans ``__cause__``.

Example:
    >>> from shardfarm.exceptions import MixedChunksError
    >>> err = MixedChunksError("Shards belong to different chunks", chunk_indices=[0, 1])
    >>> err.kind
    'mixed_chunks'
"""

from typing import Optional, List, Dict, Any


def _merge_details(details: Optional[Dict[str, Any]], **values: Any) -> Dict[str, Any]:
    """
    Ajoute aux détails les valeurs renseignées (non None) absentes du dict.

    Example:
        >>> _merge_details({'a': 1}, a=2, b=None, c=3)
        {'a': 1, 'c': 3}
    """
    details = dict(details or {})
    for key, value in values.items():
        if value is not None and key not in details:
            details[key] = value
    return details


class ShardfarmException(Exception):
    """
    Exception de base pour toutes les erreurs du pipeline.

    Toutes les exceptions spécifiques héritent de cette classe,
    permettant de capturer toutes les erreurs avec un seul except.

    Attributes:
        kind: Type d'erreur stable (ex: 'insufficient_shards')
        message: Message d'erreur descriptif
        details: Dictionnaire avec des informations supplémentaires

    Example:
        >>> try:
        ...     raise ShardfarmException("Something went wrong", {"blob_id": "0xabc"})
        ... except ShardfarmException as e:
        ...     print(e)
        Something went wrong [blob_id=0xabc]
    """

    kind = 'shardfarm_error'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialise l'exception.

        Args:
            message: Message d'erreur
            details: Informations supplémentaires optionnelles
        """
        self.message = message
        self.details = details or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Formate le message avec les détails."""
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} [{details_str}]"
        return self.message


class ConfigurationError(ShardfarmException):
    """
    Paramètres d'entrée invalides, détectés avant tout traitement.

    Example:
        >>> raise ConfigurationError(
        ...     "Parallelism must be positive",
        ...     {"parallelism": 0}
        ... )  # doctest: +IGNORE_EXCEPTION_DETAIL
        Traceback (most recent call last):
        ...
        ConfigurationError: Parallelism must be positive [parallelism=0]
    """

    kind = 'config_error'


class InvalidKeyError(ConfigurationError):
    """Clé de chiffrement de longueur incorrecte."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 expected: Optional[int] = None, actual: Optional[int] = None):
        self.expected = expected
        self.actual = actual
        super().__init__(message, _merge_details(details, expected=expected, actual=actual))


class ChunkStorageError(ShardfarmException):
    """
    Erreur d'entrée/sortie sur disque.

    Levée lors d'erreurs de lecture du fichier source, d'écriture du
    fichier reconstruit ou du stockage de shards côté farmer.

    Attributes:
        path: Chemin du fichier concerné
        operation: Opération tentée ('read', 'write', 'open', ...)
    """

    kind = 'io_error'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 path: Optional[str] = None, operation: Optional[str] = None):
        self.path = path
        self.operation = operation
        super().__init__(message, _merge_details(details, path=path, operation=operation))


class ChunkReadError(ChunkStorageError):
    """
    Échec de lecture de la source pendant le découpage.

    Les chunks déjà livrés avant l'échec restent valides.

    Attributes:
        chunk_index: Index du chunk en cours de lecture
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 path: Optional[str] = None, chunk_index: Optional[int] = None):
        self.chunk_index = chunk_index
        super().__init__(message, _merge_details(details, chunk_index=chunk_index),
                         path=path, operation='read')


class ChunkEncodingError(ShardfarmException):
    """
    Erreur lors de l'encodage Reed-Solomon.

    Example:
        >>> raise ChunkEncodingError(
        ...     "Cannot encode empty data",
        ...     {"chunk_index": 3}
        ... )  # doctest: +IGNORE_EXCEPTION_DETAIL
        Traceback (most recent call last):
        ...
        ChunkEncodingError: Cannot encode empty data [chunk_index=3]
    """

    kind = 'encoding_error'


class SizeMismatchError(ChunkEncodingError):
    """
    La taille des données ne correspond pas aux métadonnées du chunk.

    Attributes:
        chunk_index: Index du chunk concerné
        expected: Taille annoncée
        actual: Taille reçue
    """

    kind = 'size_mismatch'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 chunk_index: Optional[int] = None, expected: Optional[int] = None,
                 actual: Optional[int] = None):
        self.chunk_index = chunk_index
        self.expected = expected
        self.actual = actual
        super().__init__(message, _merge_details(
            details, chunk_index=chunk_index, expected=expected, actual=actual
        ))


class ChunkDecodingError(ShardfarmException):
    """
    Erreur lors de la reconstruction Reed-Solomon.

    Levée quand la reconstruction d'un chunk depuis ses shards échoue,
    ou quand les shards fournis sont incohérents entre eux.

    Attributes:
        chunk_index: Index du chunk concerné
    """

    kind = 'decoding_error'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 chunk_index: Optional[int] = None):
        self.chunk_index = chunk_index
        super().__init__(message, _merge_details(details, chunk_index=chunk_index))


class InsufficientShardsError(ChunkDecodingError):
    """
    Pas assez de shards pour reconstruire un chunk.

    Attributes:
        available: Nombre de shards fournis
        required: Nombre minimum requis (K pour Reed-Solomon)

    Example:
        >>> raise InsufficientShardsError(
        ...     "Need at least 4 shards",
        ...     available=3,
        ...     required=4
        ... )  # doctest: +IGNORE_EXCEPTION_DETAIL
        Traceback (most recent call last):
        ...
        InsufficientShardsError: Need at least 4 shards [available=3, required=4]
    """

    kind = 'insufficient_shards'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 chunk_index: Optional[int] = None, available: int = 0,
                 required: int = 0):
        self.available = available
        self.required = required
        details = _merge_details(details, available=available, required=required)
        super().__init__(message, details, chunk_index=chunk_index)


class MixedChunksError(ChunkDecodingError):
    """Des shards de chunks différents ont été fournis à une même reconstruction."""

    kind = 'mixed_chunks'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 chunk_indices: Optional[List[int]] = None):
        self.chunk_indices = chunk_indices or []
        super().__init__(message, _merge_details(details, chunk_indices=chunk_indices))


class InvalidShardIndexError(ChunkDecodingError):
    """Index de shard hors de [0, TOTAL_SHARDS)."""

    kind = 'invalid_shard_index'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 chunk_index: Optional[int] = None, shard_index: Optional[int] = None):
        self.shard_index = shard_index
        super().__init__(message, _merge_details(details, shard_index=shard_index),
                         chunk_index=chunk_index)


class DuplicateShardIndexError(InvalidShardIndexError):
    """Le même index de shard apparaît deux fois."""

    kind = 'duplicate_shard_index'


class ShardVerificationError(ShardfarmException):
    """
    Le contenu d'un shard ne correspond pas à son hash déclaré.

    Indique une corruption ou une falsification. Toujours vérifié avant
    l'arithmétique de reconstruction.

    Attributes:
        chunk_index: Index du chunk
        shard_index: Index du shard
        expected_hash: Hash attendu
        actual_hash: Hash calculé

    Example:
        >>> raise ShardVerificationError(
        ...     "Shard failed hash verification",
        ...     chunk_index=0,
        ...     shard_index=2
        ... )  # doctest: +IGNORE_EXCEPTION_DETAIL
        Traceback (most recent call last):
        ...
        ShardVerificationError: Shard failed hash verification [chunk_index=0, shard_index=2]
    """

    kind = 'shard_verification_failed'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 chunk_index: Optional[int] = None, shard_index: Optional[int] = None,
                 expected_hash: Optional[str] = None, actual_hash: Optional[str] = None):
        self.chunk_index = chunk_index
        self.shard_index = shard_index
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(message, _merge_details(
            details, chunk_index=chunk_index, shard_index=shard_index
        ))


class AuthenticationFailedError(ShardfarmException):
    """
    Échec d'authentification AEAD: mauvaise clé ou données altérées.

    Aucun texte clair partiel n'est jamais retourné.
    """

    kind = 'authentication_failed'


class ChunkOutOfBoundsError(ShardfarmException):
    """Chunk reçu avec un index hors de [0, total_chunks)."""

    kind = 'chunk_out_of_bounds'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 chunk_index: Optional[int] = None, total_chunks: Optional[int] = None):
        self.chunk_index = chunk_index
        self.total_chunks = total_chunks
        super().__init__(message, _merge_details(
            details, chunk_index=chunk_index, total_chunks=total_chunks
        ))


class IncompleteAssemblyError(ShardfarmException):
    """
    Le flux de chunks s'est terminé avant que tous les index soient écrits.

    Le fichier de sortie peut contenir des données partielles: il ne doit
    pas être considéré comme valide.

    Attributes:
        expected: Nombre de chunks attendus
        received: Nombre de chunks uniques écrits
        missing_indices: Indices manquants
    """

    kind = 'incomplete_assembly'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 expected: int = 0, received: int = 0,
                 missing_indices: Optional[List[int]] = None):
        self.expected = expected
        self.received = received
        self.missing_indices = missing_indices or []
        super().__init__(message, _merge_details(details, expected=expected, received=received))


class FarmerCommunicationError(ShardfarmException):
    """
    Erreur de communication avec un farmer.

    Levée lors d'erreurs réseau: connexion refusée, timeout, réponse
    invalide ou erreur renvoyée par le farmer.

    Attributes:
        farmer_address: Adresse (identité) du farmer
        endpoint: Adresse réseau host:port
        operation: Opération tentée ('store_shard', 'get_shard', 'ping')

    Example:
        >>> raise FarmerCommunicationError(
        ...     "Connection refused",
        ...     farmer_address="0xFarmer1",
        ...     operation="store_shard"
        ... )  # doctest: +IGNORE_EXCEPTION_DETAIL
        Traceback (most recent call last):
        ...
        FarmerCommunicationError: Connection refused [farmer=0xFarmer1, operation=store_shard]
    """

    kind = 'network_error'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 farmer_address: Optional[str] = None, endpoint: Optional[str] = None,
                 operation: Optional[str] = None):
        self.farmer_address = farmer_address
        self.endpoint = endpoint
        self.operation = operation
        super().__init__(message, _merge_details(
            details, farmer=farmer_address, endpoint=endpoint, operation=operation
        ))


class ShardNotFoundError(ShardfarmException):
    """Shard absent du stockage d'un farmer."""

    kind = 'shard_not_found'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 blob_id: Optional[str] = None, chunk_index: Optional[int] = None,
                 shard_index: Optional[int] = None):
        self.blob_id = blob_id
        self.chunk_index = chunk_index
        self.shard_index = shard_index
        super().__init__(message, _merge_details(
            details, blob_id=blob_id, chunk_index=chunk_index, shard_index=shard_index
        ))


class ManifestError(ShardfarmException):
    """
    Erreur de (dé)sérialisation du manifeste ou références croisées invalides.

    Attributes:
        path: Chemin du manifeste concerné
    """

    kind = 'manifest_error'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 path: Optional[str] = None):
        self.path = path
        super().__init__(message, _merge_details(details, path=path))


class UploadError(ShardfarmException):
    """
    Un chunk a moins de shards confirmés que le minimum de reconstruction.

    Erreur fatale pour toute la publication: le chunk ne pourrait jamais
    être reconstruit.

    Attributes:
        chunk_index: Index du chunk
        confirmed: Nombre de shards confirmés
        required: Nombre minimum requis
    """

    kind = 'upload_error'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 chunk_index: Optional[int] = None, confirmed: int = 0,
                 required: int = 0):
        self.chunk_index = chunk_index
        self.confirmed = confirmed
        self.required = required
        super().__init__(message, _merge_details(
            details, chunk_index=chunk_index, confirmed=confirmed, required=required
        ))


class RetrievalError(ShardfarmException):
    """
    Un chunk (ou le fichier complet) n'a pas pu être récupéré et vérifié.

    Attributes:
        chunk_index: Index du chunk concerné, None pour le fichier complet
    """

    kind = 'retrieval_error'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 chunk_index: Optional[int] = None):
        self.chunk_index = chunk_index
        super().__init__(message, _merge_details(details, chunk_index=chunk_index))


class OperationCancelledError(ShardfarmException):
    """L'opération a été interrompue par le signal d'annulation de l'appelant."""

    kind = 'cancelled'
