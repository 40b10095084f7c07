"""Integration tests for the farmer server and RPC client over real TCP."""

import asyncio
import json

import pytest

from shardfarm.exceptions import ConfigurationError, FarmerCommunicationError
from shardfarm.farmer_rpc import calculate_adaptive_timeout, parse_endpoint
from shardfarm.models import FarmerInfo, ShardUploadRequest, compute_chunk_hash
from shardfarm.retriever import Retriever
from shardfarm.shard_store import ShardStore
from shardfarm.uploader import UploadConfig, Uploader


BLOB_ID = "0x" + "ab" * 32


def make_request(data, **overrides):
    params = dict(blob_id=BLOB_ID, chunk_index=0, shard_index=1, data=data,
                  hash=compute_chunk_hash(data), size=len(data))
    params.update(overrides)
    return ShardUploadRequest(**params)


async def start_list_result_farmer():
    """Start a TCP farmer that answers every request with ``result: []``."""

    async def handle(reader, writer):
        length = int.from_bytes(await reader.readexactly(4), 'big')
        request = json.loads(await reader.readexactly(length))
        reply = json.dumps({"jsonrpc": "2.0", "id": request["id"], "result": []})
        payload = reply.encode('utf-8')
        writer.write(len(payload).to_bytes(4, 'big') + payload)
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    return server, f"127.0.0.1:{port}"


class TestHelpers:
    """Test endpoint parsing and timeouts."""

    def test_parse_endpoint(self):
        assert parse_endpoint("127.0.0.1:7000") == ("127.0.0.1", 7000)
        assert parse_endpoint("tcp://farmer.example:9") == ("farmer.example", 9)

    @pytest.mark.parametrize("endpoint", ["nohost", ":7000", "host:port"])
    def test_parse_bad_endpoint(self, endpoint):
        with pytest.raises(FarmerCommunicationError):
            parse_endpoint(endpoint)

    def test_adaptive_timeout_grows_with_size(self):
        assert calculate_adaptive_timeout(0, 30) == 35.0
        assert calculate_adaptive_timeout(100 * 1024 * 1024, 30) > 35.0


class TestShardStore:
    """Test the on-disk shard store."""

    def test_store_and_read(self, tmp_path):
        store = ShardStore(str(tmp_path))

        store.store_shard(BLOB_ID, 2, 5, b"payload")

        assert store.get_shard(BLOB_ID, 2, 5) == b"payload"
        assert store.has_shard(BLOB_ID, 2, 5)
        assert store.get_shard(BLOB_ID, 2, 4) is None
        assert store.list_shards(BLOB_ID) == [(2, 5)]

    def test_delete_blob(self, tmp_path):
        store = ShardStore(str(tmp_path))
        store.store_shard(BLOB_ID, 0, 0, b"a")
        store.store_shard(BLOB_ID, 0, 1, b"b")

        assert store.delete_blob(BLOB_ID) == 2
        assert store.list_shards(BLOB_ID) == []

    def test_rejects_path_like_blob_id(self, tmp_path):
        store = ShardStore(str(tmp_path))

        with pytest.raises(ConfigurationError):
            store.store_shard("../escape", 0, 0, b"x")


class TestFarmerServer:
    """Test the JSON-RPC protocol end to end."""

    @pytest.mark.asyncio
    async def test_ping(self, farmer_servers, rpc_client):
        _, farmer = farmer_servers[0]

        result = await rpc_client.ping(farmer)

        assert result['success']
        assert result['response']['farmer_address'] == "0xF0"

    @pytest.mark.asyncio
    async def test_store_then_fetch(self, farmer_servers, rpc_client):
        server, farmer = farmer_servers[0]
        data = bytes(range(256)) * 40

        response = await rpc_client.upload_shard(farmer, make_request(data))

        assert response.ok
        assert response.hash == compute_chunk_hash(data)
        assert server.store.get_shard(BLOB_ID, 0, 1) == data
        assert await rpc_client.has_shard(farmer, BLOB_ID, 0, 1)
        assert await rpc_client.fetch_shard(farmer, BLOB_ID, 0, 1) == data

    @pytest.mark.asyncio
    async def test_hash_mismatch_rejected(self, farmer_servers, rpc_client):
        server, farmer = farmer_servers[0]

        with pytest.raises(FarmerCommunicationError) as exc_info:
            await rpc_client.upload_shard(farmer, make_request(b"data", hash="0" * 64))

        assert exc_info.value.details['code'] == 1003
        assert not server.store.has_shard(BLOB_ID, 0, 1)

    @pytest.mark.asyncio
    async def test_size_mismatch_rejected(self, farmer_servers, rpc_client):
        _, farmer = farmer_servers[0]

        with pytest.raises(FarmerCommunicationError) as exc_info:
            await rpc_client.upload_shard(farmer, make_request(b"data", size=5))

        assert exc_info.value.details['code'] == 1003

    @pytest.mark.asyncio
    async def test_missing_shard(self, farmer_servers, rpc_client):
        _, farmer = farmer_servers[0]

        with pytest.raises(FarmerCommunicationError) as exc_info:
            await rpc_client.fetch_shard(farmer, BLOB_ID, 7, 0)

        assert exc_info.value.details['code'] == 1001
        assert not await rpc_client.has_shard(farmer, BLOB_ID, 7, 0)

    @pytest.mark.asyncio
    async def test_unreachable_farmer(self, rpc_client):
        farmer = FarmerInfo(index=0, address="0xGone", endpoint="127.0.0.1:1")

        with pytest.raises(FarmerCommunicationError):
            await rpc_client.upload_shard(farmer, make_request(b"data"))

    @pytest.mark.asyncio
    async def test_non_object_result_rejected(self, rpc_client):
        server, endpoint = await start_list_result_farmer()
        farmer = FarmerInfo(index=0, address="0xOdd", endpoint=endpoint)
        try:
            with pytest.raises(FarmerCommunicationError) as exc_info:
                await rpc_client.upload_shard(farmer, make_request(b"data"))
        finally:
            server.close()
            await server.wait_closed()

        assert "Invalid RPC result" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_concurrent_uploads_to_one_farmer(self, farmer_servers, rpc_client):
        server, farmer = farmer_servers[0]
        requests = [make_request(bytes([i]) * 1000, shard_index=i) for i in range(6)]

        responses = await asyncio.gather(
            *(rpc_client.upload_shard(farmer, r) for r in requests)
        )

        assert all(r.ok for r in responses)
        assert server.store.list_shards(BLOB_ID) == [(0, i) for i in range(6)]


class TestPublishOverTcp:
    """Test a publication and a retrieval against real farmer servers."""

    @pytest.mark.asyncio
    async def test_publish_and_retrieve(self, tmp_path, farmer_servers, rpc_client):
        content = bytes(range(256)) * 6000
        source = tmp_path / "source.bin"
        source.write_bytes(content)
        farmers = [(info.address, info.endpoint, "local") for _, info in farmer_servers]
        config = UploadConfig(
            file_path=str(source),
            farmers=farmers,
            publisher_address="0xPublisher",
            output_path=str(tmp_path / "source.manifest.json"),
        )

        manifest, stats = await Uploader(config, rpc_client).upload()
        await farmer_servers[4][0].stop()
        output = tmp_path / "restored.bin"
        await Retriever(manifest, rpc_client).retrieve(str(output))

        assert stats.shards_uploaded == 12
        assert output.read_bytes() == content

    @pytest.mark.asyncio
    async def test_malformed_farmer_only_loses_its_shards(self, tmp_path, farmer_servers,
                                                          rpc_client):
        content = bytes(range(256)) * 6000
        source = tmp_path / "source.bin"
        source.write_bytes(content)
        odd_server, odd_endpoint = await start_list_result_farmer()
        farmers = [(info.address, info.endpoint, "local") for _, info in farmer_servers]
        farmers[2] = ("0xOdd", odd_endpoint, "local")
        config = UploadConfig(
            file_path=str(source),
            farmers=farmers,
            publisher_address="0xPublisher",
            output_path=str(tmp_path / "source.manifest.json"),
        )

        try:
            manifest, stats = await Uploader(config, rpc_client).upload()
            output = tmp_path / "restored.bin"
            await Retriever(manifest, rpc_client).retrieve(str(output))
        finally:
            odd_server.close()
            await odd_server.wait_closed()

        # Two chunks: each keeps 5 of its 6 shards
        assert stats.shards_uploaded == 10
        assert len(stats.errors) == 2
        assert all(odd_endpoint in error for error in stats.errors)
        assert output.read_bytes() == content
