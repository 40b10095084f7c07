"""
Client RPC asynchrone pour la communication avec les farmers.

Ce module implémente le client utilisé par le publieur et le retriever
pour envoyer et récupérer des shards, avec un protocole JSON-RPC 2.0 sur
TCP. Chaque message est préfixé par sa longueur (4 bytes big-endian), les
données binaires sont encodées en base64.

Format du protocole:
    Requête:
    {
        "jsonrpc": "2.0",
        "id": "unique-request-id",
        "method": "store_shard|get_shard|has_shard|ping",
        "params": {...}
    }

    Réponse:
    {
        "jsonrpc": "2.0",
        "id": "unique-request-id",
        "result": {...}  // ou "error": {"code": ..., "message": ...}
    }

Une connexion est ouverte par appel: plusieurs uploads concurrents vers le
même farmer ne partagent jamais un flux.

Example:
    >>> import asyncio
    >>> from shardfarm.farmer_rpc import FarmerRPC
    >>> async def main():
    ...     rpc = FarmerRPC()
    ...     # await rpc.ping(farmer)
    ...     await rpc.close()
    >>> asyncio.run(main())
"""

import json
import asyncio
import base64
import logging
import uuid as uuid_module
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Tuple

from .config import SHARDFARM_CONFIG
from .exceptions import FarmerCommunicationError
from .models import FarmerInfo, ShardUploadRequest, ShardUploadResponse

# Constantes pour le retry avec backoff exponentiel
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_MAX_RETRY_DELAY = 30  # secondes max entre retries

# Constantes pour le timeout adaptatif
MIN_TIMEOUT_SECONDS = 5
BYTES_PER_SECOND_ESTIMATE = 1024 * 1024  # 1 MB/s estimé (conservateur)
TIMEOUT_OVERHEAD_SECONDS = 5


def calculate_adaptive_timeout(data_size_bytes: int, base_timeout: float = 30) -> float:
    """
    Calcule un timeout adaptatif basé sur la taille des données.

    Args:
        data_size_bytes: Taille des données à transférer en bytes
        base_timeout: Timeout de base configuré

    Returns:
        Timeout en secondes, adapté à la taille des données

    Example:
        >>> calculate_adaptive_timeout(0, 30)
        35.0
        >>> calculate_adaptive_timeout(50 * 1024 * 1024, 30)
        105.0
    """
    # Temps estimé pour le transfert (avec marge x2)
    transfer_time = (data_size_bytes / BYTES_PER_SECOND_ESTIMATE) * 2
    adaptive_timeout = max(base_timeout, transfer_time) + TIMEOUT_OVERHEAD_SECONDS
    return float(max(adaptive_timeout, MIN_TIMEOUT_SECONDS))


def parse_endpoint(endpoint: str) -> Tuple[str, int]:
    """
    Découpe un endpoint "host:port" (schéma optionnel).

    Raises:
        FarmerCommunicationError: Si l'endpoint est mal formé

    Example:
        >>> parse_endpoint("tcp://127.0.0.1:7000")
        ('127.0.0.1', 7000)
        >>> parse_endpoint("[::1]:7000")
        ('::1', 7000)
    """
    address = endpoint.split('://', 1)[-1].rstrip('/')
    host, sep, port = address.rpartition(':')
    try:
        if not sep or not host:
            raise ValueError("missing host or port")
        return host.strip('[]'), int(port)
    except ValueError as e:
        raise FarmerCommunicationError(
            f"Invalid farmer endpoint: {e}",
            endpoint=endpoint,
            operation="connect"
        ) from e


class FarmerClient:
    """
    Interface consommée par l'orchestrateur et le retriever.

    Un appel se termine soit par un succès (accusé de réception avec hash
    confirmé, ou données du shard), soit par une exception.
    """

    async def upload_shard(self, farmer: FarmerInfo,
                           request: ShardUploadRequest) -> ShardUploadResponse:
        raise NotImplementedError

    async def fetch_shard(self, farmer: FarmerInfo, blob_id: str,
                          chunk_index: int, shard_index: int) -> bytes:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class FarmerRPC(FarmerClient):
    """
    Client JSON-RPC sur TCP vers les farmers.

    Cette classe gère:
    - L'ouverture d'une connexion TCP par appel, avec retry et backoff
    - L'envoi et la réception de messages préfixés par leur longueur
    - Un timeout propre à chaque appel, adapté à la taille des données

    Attributes:
        max_retries: Nombre de nouvelles tentatives de connexion
        retry_delay: Délai initial entre tentatives (secondes)
        timeout: Timeout de base d'un appel (secondes)
        max_message_size: Taille maximale d'une réponse
        logger: Logger pour le debug

    Example:
        >>> rpc = FarmerRPC(max_retries=0)
        >>> rpc.max_retries
        0
    """

    def __init__(
        self,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        max_message_size: Optional[int] = None,
        logger: Optional[logging.Logger] = None
    ):
        config = SHARDFARM_CONFIG['NETWORK']
        self.max_retries = max_retries if max_retries is not None \
            else config['MAX_CONNECTION_RETRIES']
        self.retry_delay = retry_delay if retry_delay is not None \
            else config['CONNECTION_RETRY_DELAY_SECONDS']
        self.timeout = timeout if timeout is not None else config['RPC_TIMEOUT_SECONDS']
        self.max_message_size = max_message_size if max_message_size is not None \
            else config['MAX_MESSAGE_SIZE']
        self.logger = logger or logging.getLogger(__name__)
        self._open_writers: set = set()

    # ==========================================================================
    # GESTION DES CONNEXIONS
    # ==========================================================================

    async def _connect(self, farmer: FarmerInfo, operation: str
                       ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """
        Ouvre une connexion vers un farmer avec retry et backoff exponentiel.

        Raises:
            FarmerCommunicationError: Si la connexion échoue après tous les retries
        """
        host, port = parse_endpoint(farmer.endpoint)
        last_error = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                current_delay = min(
                    self.retry_delay * (DEFAULT_BACKOFF_MULTIPLIER ** (attempt - 1)),
                    DEFAULT_MAX_RETRY_DELAY
                )
                self.logger.info(
                    f"Retry {attempt}/{self.max_retries} pour {farmer.endpoint} "
                    f"dans {current_delay:.1f}s..."
                )
                await asyncio.sleep(current_delay)

            try:
                return await asyncio.wait_for(
                    asyncio.open_connection(host, port),
                    timeout=self.timeout
                )
            except asyncio.TimeoutError:
                last_error = FarmerCommunicationError(
                    "Connection timeout",
                    farmer_address=farmer.address,
                    endpoint=farmer.endpoint,
                    operation=operation
                )
            except OSError as e:
                # Connexion refusée, réseau injoignable, ...
                last_error = FarmerCommunicationError(
                    f"Network error: {e}",
                    farmer_address=farmer.address,
                    endpoint=farmer.endpoint,
                    operation=operation
                )
            self.logger.warning(
                f"Échec connexion à {farmer.endpoint}: {last_error.message} "
                f"(tentative {attempt + 1}/{self.max_retries + 1})"
            )

        self.logger.error(
            f"Échec définitif connexion à {farmer.endpoint} "
            f"après {self.max_retries + 1} tentatives"
        )
        raise last_error

    async def close(self) -> None:
        """Ferme les connexions encore ouvertes."""
        for writer in list(self._open_writers):
            writer.close()
        self._open_writers.clear()

    # ==========================================================================
    # ENVOI/RÉCEPTION RPC
    # ==========================================================================

    async def call(
        self,
        farmer: FarmerInfo,
        method: str,
        params: Dict[str, Any],
        data_size_hint: int = 0
    ) -> Dict[str, Any]:
        """
        Appelle une méthode RPC sur un farmer.

        Args:
            farmer: Farmer cible
            method: Nom de la méthode RPC
            params: Paramètres de la méthode
            data_size_hint: Indication de taille pour le timeout adaptatif

        Returns:
            Résultat de l'appel RPC

        Raises:
            FarmerCommunicationError: Si l'appel échoue
        """
        reader, writer = await self._connect(farmer, method)
        self._open_writers.add(writer)

        def error(message: str, **details) -> FarmerCommunicationError:
            return FarmerCommunicationError(
                message,
                details or None,
                farmer_address=farmer.address,
                endpoint=farmer.endpoint,
                operation=method
            )

        request_id = str(uuid_module.uuid4())
        request = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": params,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        request_bytes = json.dumps(request).encode('utf-8')
        length_prefix = len(request_bytes).to_bytes(4, 'big')

        effective_size = max(len(request_bytes), data_size_hint)
        timeout = calculate_adaptive_timeout(effective_size, self.timeout)

        try:
            writer.write(length_prefix + request_bytes)
            await asyncio.wait_for(writer.drain(), timeout=timeout)
            self.logger.debug(
                f"Requête envoyée à {farmer.endpoint}: {method} ({len(request_bytes)} bytes)"
            )

            length_bytes = await asyncio.wait_for(reader.readexactly(4), timeout=timeout)
            response_length = int.from_bytes(length_bytes, 'big')
            if response_length > self.max_message_size:
                raise error("Response too large", size=response_length,
                            max_size=self.max_message_size)

            response_timeout = calculate_adaptive_timeout(response_length, self.timeout)
            response_bytes = await asyncio.wait_for(
                reader.readexactly(response_length),
                timeout=response_timeout
            )
            response = json.loads(response_bytes.decode('utf-8'))

        except asyncio.TimeoutError as e:
            raise error("Request timeout") from e
        except asyncio.IncompleteReadError as e:
            raise error("Connection closed by farmer") from e
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise error(f"Transport error: {e}") from e
        finally:
            self._open_writers.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

        if not isinstance(response, dict) or response.get('id') != request_id:
            raise error("Response ID mismatch")
        if 'error' in response:
            rpc_error = response['error'] or {}
            if not isinstance(rpc_error, dict):
                rpc_error = {'message': str(rpc_error)}
            raise error(
                f"RPC error: {rpc_error.get('message', 'Unknown error')}",
                code=rpc_error.get('code')
            )
        result = response.get('result')
        if result is None:
            return {}
        if not isinstance(result, dict):
            raise error("Invalid RPC result", result_type=type(result).__name__)
        return result

    # ==========================================================================
    # MÉTHODES RPC SPÉCIFIQUES
    # ==========================================================================

    async def ping(self, farmer: FarmerInfo) -> Dict[str, Any]:
        """
        Ping un farmer pour vérifier sa disponibilité.

        Returns:
            {'success': bool, 'endpoint': str, 'latency_ms': float} ou
            {'success': False, 'endpoint': str, 'error': str}
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        try:
            result = await self.call(farmer, 'ping', {})
        except FarmerCommunicationError as e:
            return {'success': False, 'endpoint': farmer.endpoint, 'error': str(e)}
        return {
            'success': True,
            'endpoint': farmer.endpoint,
            'latency_ms': round((loop.time() - start_time) * 1000, 2),
            'response': result,
        }

    async def upload_shard(self, farmer: FarmerInfo,
                           request: ShardUploadRequest) -> ShardUploadResponse:
        """
        Envoie un shard à stocker sur un farmer.

        Returns:
            Réponse du farmer (statut, message, hash confirmé)

        Raises:
            FarmerCommunicationError: Si l'appel échoue
        """
        params = {
            'blob_id': request.blob_id,
            'chunk_index': request.chunk_index,
            'shard_index': request.shard_index,
            'data_b64': base64.b64encode(request.data).decode('ascii'),
            'hash': request.hash,
            'size': request.size,
        }
        # base64 = ~1.33x la taille originale
        result = await self.call(farmer, 'store_shard', params,
                                 data_size_hint=int(len(request.data) * 1.4))
        return ShardUploadResponse.from_dict(result)

    async def fetch_shard(self, farmer: FarmerInfo, blob_id: str,
                          chunk_index: int, shard_index: int) -> bytes:
        """
        Récupère les données d'un shard depuis un farmer.

        Le hash n'est pas vérifié ici: c'est au retriever de comparer avec
        le manifeste.

        Raises:
            FarmerCommunicationError: Si l'appel échoue ou la réponse est invalide
        """
        params = {
            'blob_id': blob_id,
            'chunk_index': chunk_index,
            'shard_index': shard_index,
        }
        result = await self.call(farmer, 'get_shard', params)
        try:
            return base64.b64decode(result['data_b64'], validate=True)
        except (KeyError, TypeError, ValueError) as e:
            raise FarmerCommunicationError(
                "Invalid shard payload",
                farmer_address=farmer.address,
                endpoint=farmer.endpoint,
                operation='get_shard'
            ) from e

    async def has_shard(self, farmer: FarmerInfo, blob_id: str,
                        chunk_index: int, shard_index: int) -> bool:
        """Vérifie si un farmer détient un shard."""
        result = await self.call(farmer, 'has_shard', {
            'blob_id': blob_id,
            'chunk_index': chunk_index,
            'shard_index': shard_index,
        })
        return bool(result.get('exists'))
