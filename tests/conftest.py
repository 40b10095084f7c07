"""Shared pytest fixtures for all tests."""

import asyncio
import os

import pytest
import pytest_asyncio

from shardfarm.exceptions import FarmerCommunicationError
from shardfarm.farmer_net import FarmerServer
from shardfarm.farmer_rpc import FarmerClient, FarmerRPC
from shardfarm.models import (
    FarmerInfo, ShardUploadResponse, compute_chunk_hash
)
from shardfarm.shard_store import ShardStore


MIB = 1024 * 1024


class InMemoryFarmerClient(FarmerClient):
    """
    Farmer client keeping shards in a dict, with failure injection.

    Attributes:
        shards: (endpoint, blob_id, chunk_index, shard_index) -> bytes
        failing_endpoints: Endpoints whose calls raise FarmerCommunicationError
        wrong_hash_endpoints: Endpoints that store but confirm a bogus hash
        corrupt_endpoints: Endpoints that return flipped bytes on fetch
        hanging_endpoints: Endpoints whose calls never complete
    """

    def __init__(self):
        self.shards = {}
        self.failing_endpoints = set()
        self.wrong_hash_endpoints = set()
        self.corrupt_endpoints = set()
        self.hanging_endpoints = set()
        self.upload_calls = 0
        self.fetch_calls = 0
        self.upload_hook = None

    async def _check(self, farmer, operation):
        if farmer.endpoint in self.hanging_endpoints:
            await asyncio.sleep(3600)
        if farmer.endpoint in self.failing_endpoints:
            raise FarmerCommunicationError(
                "Connection refused",
                farmer_address=farmer.address,
                endpoint=farmer.endpoint,
                operation=operation
            )

    async def upload_shard(self, farmer, request):
        self.upload_calls += 1
        if self.upload_hook is not None:
            self.upload_hook(request)
        await self._check(farmer, 'store_shard')
        key = (farmer.endpoint, request.blob_id, request.chunk_index, request.shard_index)
        self.shards[key] = request.data
        confirmed = compute_chunk_hash(request.data)
        if farmer.endpoint in self.wrong_hash_endpoints:
            confirmed = "0" * 64
        return ShardUploadResponse(status='ok', message='stored', hash=confirmed)

    async def fetch_shard(self, farmer, blob_id, chunk_index, shard_index):
        self.fetch_calls += 1
        await self._check(farmer, 'get_shard')
        key = (farmer.endpoint, blob_id, chunk_index, shard_index)
        if key not in self.shards:
            raise FarmerCommunicationError("RPC error: Shard not found",
                                           endpoint=farmer.endpoint,
                                           operation='get_shard')
        data = self.shards[key]
        if farmer.endpoint in self.corrupt_endpoints:
            data = bytes([data[0] ^ 0xFF]) + data[1:]
        return data

    def shards_on(self, endpoint):
        return [key for key in self.shards if key[0] == endpoint]


def make_farmers(count):
    return [
        FarmerInfo(index=i, address=f"0xF{i}", endpoint=f"10.0.0.{i + 1}:7000",
                   region="eu")
        for i in range(count)
    ]


def write_random_file(path, size):
    """Write ``size`` random bytes to ``path`` and return the content."""
    data = os.urandom(size)
    with open(path, 'wb') as f:
        f.write(data)
    return data


@pytest.fixture
def memory_client():
    """In-memory farmer client."""
    return InMemoryFarmerClient()


@pytest.fixture
def farmers():
    """Six farmers: one per shard of a chunk."""
    return make_farmers(6)


@pytest.fixture
def sample_file(tmp_path):
    """
    Create a 3.5 MiB random file (three full chunks and a short one).

    Returns:
        (path, content)
    """
    path = tmp_path / 'sample.bin'
    content = write_random_file(path, 3 * MIB + MIB // 2)
    return str(path), content


@pytest.fixture
def rpc_client():
    """FarmerRPC without connection retries."""
    return FarmerRPC(max_retries=0, retry_delay=0, timeout=5)


@pytest_asyncio.fixture
async def farmer_servers(tmp_path):
    """
    Start six real farmer servers on ephemeral ports.

    Returns:
        List of (FarmerServer, FarmerInfo)
    """
    servers = []
    for i in range(6):
        store = ShardStore(str(tmp_path / f"farmer{i}"))
        server = FarmerServer(f"0xF{i}", store)
        port = await server.start("127.0.0.1", 0)
        servers.append((server, FarmerInfo(index=i, address=f"0xF{i}",
                                           endpoint=f"127.0.0.1:{port}")))
    yield servers
    for server, _ in servers:
        await server.stop()
