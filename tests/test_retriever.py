"""Tests for retrieval from a manifest."""

import asyncio

import pytest

from shardfarm.exceptions import (
    ConfigurationError, ManifestError, OperationCancelledError, RetrievalError
)
from shardfarm.manifest import Manifest
from shardfarm.reed_solomon import ReedSolomonEncoder
from shardfarm.retriever import Retriever, retrieve
from shardfarm.uploader import UploadConfig, Uploader


async def publish_sample(tmp_path, path, farmers, client, encoder=None):
    config = UploadConfig(
        file_path=path,
        farmers=farmers,
        publisher_address="0xPublisher",
        output_path=str(tmp_path / "sample.manifest.json"),
    )
    manifest, _ = await Uploader(config, client, encoder=encoder).upload()
    return manifest


class TestRetriever:
    """Test reconstruction of a published file."""

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path, sample_file, farmers, memory_client):
        path, content = sample_file
        manifest = await publish_sample(tmp_path, path, farmers, memory_client)
        output = tmp_path / "restored.bin"

        stats = await Retriever(manifest, memory_client).retrieve(str(output))

        assert output.read_bytes() == content
        assert stats.chunks_recovered == 4
        assert stats.shards_downloaded == 16
        assert stats.errors == []

    @pytest.mark.asyncio
    async def test_two_farmers_down(self, tmp_path, sample_file, farmers, memory_client):
        path, content = sample_file
        manifest = await publish_sample(tmp_path, path, farmers, memory_client)
        memory_client.failing_endpoints.update({farmers[0].endpoint, farmers[3].endpoint})
        output = tmp_path / "restored.bin"

        stats = await Retriever(manifest, memory_client).retrieve(str(output))

        assert output.read_bytes() == content
        assert stats.chunks_recovered == 4
        assert stats.errors
        down = (farmers[0].endpoint, farmers[3].endpoint)
        assert all(any(e in error for e in down) for error in stats.errors)

    @pytest.mark.asyncio
    async def test_corrupted_shard_skipped(self, tmp_path, sample_file, farmers,
                                           memory_client):
        path, content = sample_file
        manifest = await publish_sample(tmp_path, path, farmers, memory_client)
        memory_client.corrupt_endpoints.add(farmers[1].endpoint)
        output = tmp_path / "restored.bin"

        stats = await Retriever(manifest, memory_client).retrieve(str(output))

        assert output.read_bytes() == content
        assert any("hash does not match" in error for error in stats.errors)

    @pytest.mark.asyncio
    async def test_three_farmers_down_is_fatal(self, tmp_path, sample_file, farmers,
                                               memory_client):
        path, _ = sample_file
        manifest = await publish_sample(tmp_path, path, farmers, memory_client)
        memory_client.failing_endpoints.update(f.endpoint for f in farmers[:3])

        with pytest.raises(RetrievalError) as exc_info:
            await Retriever(manifest, memory_client).retrieve(str(tmp_path / "out.bin"))

        assert exc_info.value.chunk_index is not None

    @pytest.mark.asyncio
    async def test_follows_manifest_coding_parameters(self, tmp_path, sample_file,
                                                      farmers, memory_client):
        path, content = sample_file
        manifest = await publish_sample(tmp_path, path, farmers, memory_client,
                                        encoder=ReedSolomonEncoder(k=3, m=3))
        memory_client.failing_endpoints.update(f.endpoint for f in farmers[:3])
        output = tmp_path / "restored.bin"

        stats = await Retriever(manifest, memory_client).retrieve(str(output))

        assert (manifest.data_shards, manifest.parity_shards) == (3, 3)
        assert output.read_bytes() == content
        assert stats.shards_downloaded == 12

    @pytest.mark.asyncio
    async def test_invalid_parallelism(self, tmp_path, sample_file, farmers,
                                       memory_client):
        path, _ = sample_file
        manifest = await publish_sample(tmp_path, path, farmers, memory_client)

        with pytest.raises(ConfigurationError):
            await Retriever(manifest, memory_client, parallelism=0).retrieve(
                str(tmp_path / "out.bin"))

        assert memory_client.fetch_calls == 0

    @pytest.mark.asyncio
    async def test_wrong_key_is_fatal(self, tmp_path, farmers, memory_client):
        path = tmp_path / "small.bin"
        path.write_bytes(b"confidential" * 100)
        manifest = await publish_sample(tmp_path, str(path), farmers, memory_client)
        data = manifest.to_dict()
        data["encryption_key"] = "00" * 32
        forged = Manifest.from_dict(data)

        with pytest.raises(RetrievalError) as exc_info:
            await Retriever(forged, memory_client).retrieve(str(tmp_path / "out.bin"))

        assert exc_info.value.__cause__.kind == 'authentication_failed'

    @pytest.mark.asyncio
    async def test_invalid_manifest(self, tmp_path, farmers, memory_client):
        path = tmp_path / "small.bin"
        path.write_bytes(b"abc")
        manifest = await publish_sample(tmp_path, str(path), farmers, memory_client)
        data = manifest.to_dict()
        data["file_size"] = 99

        with pytest.raises(ManifestError):
            await Retriever(Manifest.from_dict(data), memory_client).retrieve(
                str(tmp_path / "out.bin"))

    @pytest.mark.asyncio
    async def test_empty_file(self, tmp_path, farmers, memory_client):
        path = tmp_path / "empty.bin"
        path.write_bytes(b"")
        manifest = await publish_sample(tmp_path, str(path), farmers, memory_client)
        output = tmp_path / "restored.bin"

        stats = await Retriever(manifest, memory_client).retrieve(str(output))

        assert output.read_bytes() == b""
        assert stats.chunks_recovered == 0

    @pytest.mark.asyncio
    async def test_cancelled(self, tmp_path, sample_file, farmers, memory_client):
        path, _ = sample_file
        manifest = await publish_sample(tmp_path, path, farmers, memory_client)
        cancel_event = asyncio.Event()
        cancel_event.set()

        with pytest.raises(OperationCancelledError):
            await Retriever(manifest, memory_client, cancel_event=cancel_event).retrieve(
                str(tmp_path / "out.bin"))

        assert memory_client.fetch_calls == 0

    @pytest.mark.asyncio
    async def test_retrieve_from_manifest_path(self, tmp_path, farmers, memory_client):
        path = tmp_path / "small.bin"
        path.write_bytes(b"by path" * 300)
        await publish_sample(tmp_path, str(path), farmers, memory_client)
        output = tmp_path / "restored.bin"

        await retrieve(str(tmp_path / "sample.manifest.json"), str(output), memory_client,
                       parallelism=2)

        assert output.read_bytes() == b"by path" * 300
