"""Unit tests for the RS(4, 2) erasure coding engine."""

import itertools
import os

import pytest
from reedsolo import RSCodec

from shardfarm.crypto import encrypt_chunk, generate_key
from shardfarm.exceptions import (
    ChunkDecodingError, ChunkEncodingError, DuplicateShardIndexError,
    InsufficientShardsError, InvalidShardIndexError, MixedChunksError,
    ShardVerificationError, SizeMismatchError
)
from shardfarm.models import Chunk, Shard, compute_chunk_hash
from shardfarm.reed_solomon import ReedSolomonEncoder, create_encoder


@pytest.fixture
def encoder():
    return ReedSolomonEncoder(k=4, m=2)


def sealed_chunk(index, size):
    ciphertext = os.urandom(size)
    return Chunk.from_data(index, ciphertext), ciphertext


class TestEncoding:
    """Test shard production."""

    def test_split_chunk_produces_six_hashed_shards(self, encoder):
        chunk, ciphertext = sealed_chunk(0, 1001)

        shards = encoder.split_chunk(chunk, ciphertext)

        assert [s.shard_index for s in shards] == list(range(6))
        assert all(s.chunk_index == 0 for s in shards)
        assert {s.size for s in shards} == {251}
        for shard in shards:
            assert shard.hash == compute_chunk_hash(shard.data)
        assert [s.is_parity for s in shards] == [False] * 4 + [True] * 2

    def test_data_shards_are_plain_partitions(self, encoder):
        chunk, ciphertext = sealed_chunk(0, 400)

        shards = encoder.split_chunk(chunk, ciphertext)

        assert b''.join(s.data for s in shards[:4]) == ciphertext

    def test_parity_matches_reedsolo_codec(self, encoder):
        data_shards = encoder.split(os.urandom(64))
        shards = encoder.encode(data_shards)
        codec = RSCodec(2, nsize=6, prim=0x11d)

        for column in range(len(data_shards[0])):
            message = bytes(s[column] for s in data_shards)
            codeword = codec.encode(message)
            assert bytes(s[column] for s in shards[4:]) == bytes(codeword[4:])

    def test_verify(self, encoder):
        shards = encoder.encode(encoder.split(b'parity check' * 10))

        assert encoder.verify(shards)
        shards[5] = bytes([shards[5][0] ^ 1]) + shards[5][1:]
        assert not encoder.verify(shards)

    def test_size_mismatch(self, encoder):
        chunk, ciphertext = sealed_chunk(2, 100)

        with pytest.raises(SizeMismatchError) as exc_info:
            encoder.split_chunk(chunk, ciphertext[:-1])

        assert exc_info.value.chunk_index == 2

    def test_empty_data_rejected(self, encoder):
        with pytest.raises(ChunkEncodingError):
            encoder.split(b'')

    def test_create_encoder_defaults(self):
        info = create_encoder().get_encoding_info()

        assert info['k'] == 4
        assert info['m'] == 2
        assert info['overhead_ratio'] == 1.5


class TestReconstruction:
    """Test recovery from any four of six shards."""

    @pytest.mark.parametrize("subset", list(itertools.combinations(range(6), 4)))
    def test_any_four_shards_recover_chunk(self, encoder, subset):
        chunk, ciphertext = sealed_chunk(7, 1000)
        shards = encoder.split_chunk(chunk, ciphertext)

        recovered = encoder.reconstruct_chunk([shards[i] for i in subset], len(ciphertext))

        assert recovered == ciphertext

    def test_recover_from_parity_heavy_subset_of_full_chunk(self, encoder):
        key = generate_key()
        ciphertext = encrypt_chunk(os.urandom(1024 * 1024), key)
        chunk = Chunk.from_data(0, ciphertext)
        shards = encoder.split_chunk(chunk, ciphertext)

        recovered = encoder.reconstruct_chunk([shards[i] for i in (2, 3, 4, 5)],
                                              len(ciphertext))

        assert recovered == ciphertext

    def test_all_six_shards(self, encoder):
        chunk, ciphertext = sealed_chunk(0, 333)
        shards = encoder.split_chunk(chunk, ciphertext)

        assert encoder.reconstruct_chunk(list(reversed(shards)), 333) == ciphertext

    def test_three_shards_insufficient(self, encoder):
        chunk, ciphertext = sealed_chunk(3, 100)
        shards = encoder.split_chunk(chunk, ciphertext)

        with pytest.raises(InsufficientShardsError) as exc_info:
            encoder.reconstruct_chunk(shards[:3], 100)

        assert exc_info.value.available == 3
        assert exc_info.value.required == 4
        assert exc_info.value.chunk_index == 3

    def test_bit_flip_detected_before_decoding(self, encoder):
        chunk, ciphertext = sealed_chunk(0, 100)
        shards = encoder.split_chunk(chunk, ciphertext)
        bad = shards[1]
        shards[1] = Shard(bad.chunk_index, bad.shard_index,
                          bytes([bad.data[0] ^ 0x01]) + bad.data[1:], bad.hash, bad.size)

        with pytest.raises(ShardVerificationError) as exc_info:
            encoder.reconstruct_chunk(shards[:4], 100)

        assert exc_info.value.shard_index == 1

    def test_mixed_chunks(self, encoder):
        a, ct_a = sealed_chunk(0, 100)
        b, ct_b = sealed_chunk(1, 100)
        shards_a = encoder.split_chunk(a, ct_a)
        shards_b = encoder.split_chunk(b, ct_b)

        with pytest.raises(MixedChunksError) as exc_info:
            encoder.reconstruct_chunk(shards_a[:3] + shards_b[3:4], 100)

        assert exc_info.value.chunk_indices == [0, 1]

    def test_out_of_range_index(self, encoder):
        chunk, ciphertext = sealed_chunk(0, 100)
        shards = encoder.split_chunk(chunk, ciphertext)
        last = shards[3]
        shards[3] = Shard(0, 9, last.data, last.hash, last.size)

        with pytest.raises(InvalidShardIndexError):
            encoder.reconstruct_chunk(shards[:4], 100)

    def test_duplicate_index(self, encoder):
        chunk, ciphertext = sealed_chunk(0, 100)
        shards = encoder.split_chunk(chunk, ciphertext)

        with pytest.raises(DuplicateShardIndexError):
            encoder.reconstruct_chunk(shards[:3] + [shards[0]], 100)

    def test_non_positive_original_size(self, encoder):
        chunk, ciphertext = sealed_chunk(0, 100)
        shards = encoder.split_chunk(chunk, ciphertext)

        with pytest.raises(SizeMismatchError):
            encoder.reconstruct_chunk(shards, 0)

    def test_original_size_larger_than_data(self, encoder):
        chunk, ciphertext = sealed_chunk(0, 100)
        shards = encoder.split_chunk(chunk, ciphertext)

        with pytest.raises(SizeMismatchError):
            encoder.reconstruct_chunk(shards, 10_000)

    def test_inconsistent_extra_shard(self, encoder):
        chunk, ciphertext = sealed_chunk(0, 100)
        shards = encoder.split_chunk(chunk, ciphertext)
        _, other = sealed_chunk(0, 100)
        forged_data = encoder.split_chunk(Chunk.from_data(0, other), other)[5].data
        shards[5] = Shard(0, 5, forged_data, compute_chunk_hash(forged_data), len(forged_data))

        with pytest.raises(ChunkDecodingError):
            encoder.reconstruct_chunk(shards, 100)

    def test_low_level_reconstruct_with_gaps(self, encoder):
        data = b'low level API' * 31
        slots = encoder.encode(encoder.split(data))
        slots[0] = slots[4] = None

        assert encoder.join(encoder.reconstruct(slots), len(data)) == data

    @pytest.mark.parametrize("missing", list(itertools.combinations(range(6), 2)))
    def test_reconstruct_matches_reedsolo_decode(self, encoder, missing):
        data_shards = encoder.split(os.urandom(96))
        slots = encoder.encode(data_shards)
        for index in missing:
            slots[index] = None
        codec = RSCodec(2, nsize=6, prim=0x11d)

        rebuilt = encoder.reconstruct(slots)

        for column in range(len(data_shards[0])):
            codeword = bytes(0 if slots[i] is None else slots[i][column] for i in range(6))
            decoded, _, _ = codec.decode(codeword, erase_pos=list(missing))
            assert bytes(s[column] for s in rebuilt[:4]) == bytes(decoded)
