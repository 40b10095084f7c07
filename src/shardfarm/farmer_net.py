"""
Serveur réseau d'un farmer.

Ce module implémente le serveur TCP asynchrone qui reçoit les shards
envoyés par les publieurs et les sert aux retrievers.

Le serveur utilise le même protocole que le client FarmerRPC:
    - Préfixe de 4 bytes (big-endian) pour la longueur du message
    - Corps JSON au format JSON-RPC 2.0

Codes d'erreur applicatifs:
    - 1001: shard introuvable
    - 1002: erreur de stockage
    - 1003: requête invalide (hash, taille, index, paramètres)

Example:
    >>> import asyncio, tempfile
    >>> from shardfarm.farmer_net import FarmerServer
    >>> from shardfarm.shard_store import ShardStore
    >>> async def main():
    ...     server = FarmerServer("0xFarmer", ShardStore(tempfile.mkdtemp()))
    ...     port = await server.start("127.0.0.1", 0)
    ...     await server.stop()
    ...     return port > 0
    >>> asyncio.run(main())
    True
"""

import json
import asyncio
import base64
import binascii
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Set

from .config import SHARDFARM_CONFIG
from .exceptions import (
    ShardNotFoundError, ChunkStorageError, ConfigurationError,
    ShardVerificationError, SizeMismatchError, InvalidShardIndexError
)
from .models import compute_chunk_hash
from .shard_store import ShardStore

ERROR_NOT_FOUND = 1001
ERROR_STORAGE = 1002
ERROR_VALIDATION = 1003


class FarmerServer:
    """
    Serveur TCP asynchrone d'un farmer.

    Cette classe:
    - Écoute sur un port TCP pour les connexions entrantes
    - Traite les requêtes JSON-RPC (ping, store_shard, get_shard, has_shard)
    - Vérifie hash et taille d'un shard avant de le stocker

    Attributes:
        farmer_address: Identité du farmer, renvoyée par ping
        store: Stockage local des shards
        logger: Logger pour le debug
    """

    def __init__(
        self,
        farmer_address: str,
        store: ShardStore,
        logger: Optional[logging.Logger] = None
    ):
        self.farmer_address = farmer_address
        self.store = store
        self.logger = logger or logging.getLogger(__name__)
        self.config = SHARDFARM_CONFIG['NETWORK']

        self._server: Optional[asyncio.AbstractServer] = None
        self._active_connections: Set[asyncio.Task] = set()
        self._running = False
        self.port: Optional[int] = None

        self._rpc_methods = {
            'ping': self._handle_ping,
            'store_shard': self._handle_store_shard,
            'get_shard': self._handle_get_shard,
            'has_shard': self._handle_has_shard,
        }

    # ==========================================================================
    # GESTION DU SERVEUR
    # ==========================================================================

    async def start(self, host: str = "0.0.0.0", port: int = 0) -> int:
        """
        Démarre le serveur TCP.

        Args:
            host: Adresse d'écoute
            port: Port d'écoute (0 = port éphémère)

        Returns:
            Port effectivement utilisé
        """
        if self._running:
            self.logger.warning("Serveur déjà en cours d'exécution")
            return self.port

        self._server = await asyncio.start_server(self._handle_client, host, port)
        self._running = True
        self.port = self._server.sockets[0].getsockname()[1]
        self.logger.info(f"Farmer {self.farmer_address} en écoute sur {host}:{self.port}")
        return self.port

    async def stop(self) -> None:
        """Arrête le serveur proprement."""
        if not self._running:
            return
        self._running = False

        self._server.close()
        for task in list(self._active_connections):
            task.cancel()
        if self._active_connections:
            await asyncio.gather(*self._active_connections, return_exceptions=True)
        await self._server.wait_closed()
        self.logger.info(f"Farmer {self.farmer_address} arrêté")

    @property
    def is_running(self) -> bool:
        return self._running

    # ==========================================================================
    # GESTION DES CONNEXIONS
    # ==========================================================================

    async def _handle_client(self, reader: asyncio.StreamReader,
                             writer: asyncio.StreamWriter) -> None:
        """Gère une connexion entrante: une ou plusieurs requêtes."""
        addr = writer.get_extra_info('peername')
        task = asyncio.current_task()
        self._active_connections.add(task)
        timeout = self.config['RPC_TIMEOUT_SECONDS']
        max_size = self.config['MAX_MESSAGE_SIZE']

        try:
            while self._running:
                try:
                    length_bytes = await asyncio.wait_for(reader.readexactly(4), timeout=timeout)
                    message_length = int.from_bytes(length_bytes, 'big')
                    if message_length > max_size:
                        self.logger.warning(f"Message trop grand: {message_length} > {max_size}")
                        break

                    message_bytes = await asyncio.wait_for(
                        reader.readexactly(message_length), timeout=timeout
                    )
                    request = json.loads(message_bytes.decode('utf-8'))
                    response = await self._process_request(request)
                    await self._send_response(writer, response)

                except asyncio.TimeoutError:
                    self.logger.debug(f"Timeout de connexion pour {addr}")
                    break
                except asyncio.IncompleteReadError:
                    break
                except (UnicodeDecodeError, json.JSONDecodeError) as e:
                    self.logger.warning(f"JSON invalide de {addr}: {e}")
                    await self._send_response(
                        writer, self._make_error_response(None, -32700, "Parse error")
                    )
                    break
        except asyncio.CancelledError:
            pass
        except OSError as e:
            self.logger.warning(f"Erreur réseau avec {addr}: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (OSError, asyncio.CancelledError):
                pass
            self._active_connections.discard(task)

    async def _send_response(self, writer: asyncio.StreamWriter,
                             response: Dict[str, Any]) -> None:
        response_bytes = json.dumps(response).encode('utf-8')
        writer.write(len(response_bytes).to_bytes(4, 'big') + response_bytes)
        await writer.drain()

    # ==========================================================================
    # TRAITEMENT DES REQUÊTES
    # ==========================================================================

    async def _process_request(self, request: Any) -> Dict[str, Any]:
        """
        Traite une requête JSON-RPC.

        Returns:
            Réponse JSON-RPC (résultat ou erreur)
        """
        if not isinstance(request, dict):
            return self._make_error_response(None, -32600, "Invalid Request")

        request_id = request.get('id')
        method = request.get('method')
        params = request.get('params') or {}

        if request.get('jsonrpc') != '2.0' or not method:
            return self._make_error_response(request_id, -32600, "Invalid Request")
        if method not in self._rpc_methods:
            return self._make_error_response(request_id, -32601, f"Method not found: {method}")

        self.logger.debug(f"Requête reçue: {method}")
        try:
            result = await self._rpc_methods[method](params)
            return {"jsonrpc": "2.0", "id": request_id, "result": result}

        except ShardNotFoundError as e:
            return self._make_error_response(
                request_id, ERROR_NOT_FOUND, str(e), {'code': 'SHARD_NOT_FOUND'}
            )
        except ChunkStorageError as e:
            self.logger.error(f"Erreur de stockage pour {method}: {e}")
            return self._make_error_response(
                request_id, ERROR_STORAGE, str(e), {'code': 'STORAGE_ERROR'}
            )
        except (ShardVerificationError, SizeMismatchError, InvalidShardIndexError,
                ConfigurationError) as e:
            self.logger.warning(f"Requête {method} rejetée: {e}")
            return self._make_error_response(
                request_id, ERROR_VALIDATION, str(e), {'code': 'VALIDATION_ERROR'}
            )
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            return self._make_error_response(
                request_id, ERROR_VALIDATION, f"Invalid params: {e!r}",
                {'code': 'VALIDATION_ERROR'}
            )

    def _make_error_response(
        self,
        request_id: Optional[str],
        code: int,
        message: str,
        data: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """Crée une réponse d'erreur JSON-RPC."""
        error = {"code": code, "message": message}
        if data:
            error["data"] = data
        return {"jsonrpc": "2.0", "id": request_id, "error": error}

    # ==========================================================================
    # HANDLERS RPC
    # ==========================================================================

    async def _handle_ping(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'pong': True,
            'farmer_address': self.farmer_address,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }

    async def _handle_store_shard(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Handler pour stocker un shard.

        Args:
            params: {
                'blob_id': str,
                'chunk_index': int,
                'shard_index': int,
                'data_b64': str,
                'hash': str,
                'size': int
            }

        Returns:
            {'status': 'ok', 'message': str, 'hash': str}
        """
        blob_id = params['blob_id']
        chunk_index = int(params['chunk_index'])
        shard_index = int(params['shard_index'])
        data = base64.b64decode(params['data_b64'], validate=True)
        declared_hash = params['hash']
        declared_size = int(params['size'])

        if len(data) != declared_size:
            raise SizeMismatchError(
                "Shard size does not match declared size",
                chunk_index=chunk_index,
                expected=declared_size,
                actual=len(data)
            )
        computed_hash = compute_chunk_hash(data)
        if computed_hash != declared_hash:
            raise ShardVerificationError(
                "Shard hash does not match declared hash",
                chunk_index=chunk_index,
                shard_index=shard_index,
                expected_hash=declared_hash,
                actual_hash=computed_hash
            )

        await asyncio.to_thread(self.store.store_shard, blob_id, chunk_index, shard_index, data)
        self.logger.info(
            f"Shard stocké: {blob_id[:18]}#{chunk_index}/{shard_index} ({len(data)} bytes)"
        )
        return {'status': 'ok', 'message': 'stored', 'hash': computed_hash}

    async def _handle_get_shard(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Handler pour récupérer un shard.

        Returns:
            {'data_b64': str, 'hash': str, 'size': int}
        """
        blob_id = params['blob_id']
        chunk_index = int(params['chunk_index'])
        shard_index = int(params['shard_index'])

        data = await asyncio.to_thread(self.store.get_shard, blob_id, chunk_index, shard_index)
        if data is None:
            raise ShardNotFoundError(
                "Shard not found",
                blob_id=blob_id,
                chunk_index=chunk_index,
                shard_index=shard_index
            )
        return {
            'data_b64': base64.b64encode(data).decode('ascii'),
            'hash': compute_chunk_hash(data),
            'size': len(data),
        }

    async def _handle_has_shard(self, params: Dict[str, Any]) -> Dict[str, Any]:
        exists = await asyncio.to_thread(
            self.store.has_shard,
            params['blob_id'], int(params['chunk_index']), int(params['shard_index'])
        )
        return {'exists': exists}
