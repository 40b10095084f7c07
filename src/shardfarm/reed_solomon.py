"""
Encodeur et décodeur Reed-Solomon pour les chunks chiffrés.

Ce module implémente l'erasure coding RS(k=4, m=2) sur GF(2^8): un chunk
chiffré est découpé en 4 shards de données et 2 shards de parité, et
n'importe quels 4 shards sur 6 suffisent à le reconstruire exactement.

Le code est celui de ``reedsolo`` (code RS systématique, polynôme 0x11d).
Plutôt que d'encoder colonne par colonne avec ``RSCodec``, on dérive une
fois la matrice génératrice du code (en encodant les vecteurs unitaires)
puis on l'applique shard par shard avec des tables de multiplication.
Les shards produits sont identiques octet pour octet à ceux de
``RSCodec.encode`` appliqué à chaque colonne.

Le décodage suit le même principe: pour chaque motif d'effacement, la
matrice de décodage est obtenue avec ``RSCodec.decode(..., erase_pos=...)``
sur les mots unitaires, puis mise en cache.

Example:
    >>> from shardfarm.reed_solomon import ReedSolomonEncoder
    >>> encoder = ReedSolomonEncoder(k=4, m=2)
    >>> shards = encoder.encode(encoder.split(b'Hello World!' * 100))
    >>> len(shards)
    6
    >>> shards[2] = shards[3] = None
    >>> encoder.join(encoder.reconstruct(shards), 1200) == b'Hello World!' * 100
    True
"""

import logging
from functools import reduce
from operator import xor
from typing import List, Dict, Optional, Sequence, Tuple

from reedsolo import RSCodec, ReedSolomonError, init_tables

from .config import DATA_SHARDS, PARITY_SHARDS, GF_PRIMITIVE_POLY, SHARDFARM_CONFIG
from .models import Chunk, Shard, compute_chunk_hash
from .exceptions import (
    ChunkEncodingError, ChunkDecodingError, InsufficientShardsError,
    SizeMismatchError, MixedChunksError, ShardVerificationError,
    InvalidShardIndexError, DuplicateShardIndexError
)


# ============================================================================
# ARITHMÉTIQUE GF(2^8)
# ============================================================================

class _GaloisField:
    """
    Tables du corps GF(2^8) fournies par reedsolo.

    Les tables de multiplication par une constante sont des tables de
    traduction de 256 octets, appliquées avec ``bytes.translate``.
    """

    def __init__(self, prim: int = GF_PRIMITIVE_POLY):
        gf_log, gf_exp, field_charac = init_tables(prim)
        self.log = list(gf_log)
        self.exp = list(gf_exp)
        self.order = field_charac          # 255
        self._mul_tables: Dict[int, bytes] = {}

    def mul(self, a: int, b: int) -> int:
        if a == 0 or b == 0:
            return 0
        return self.exp[(self.log[a] + self.log[b]) % self.order]

    def mul_table(self, c: int) -> bytes:
        """Table de traduction x -> c*x."""
        table = self._mul_tables.get(c)
        if table is None:
            table = bytes(self.mul(c, x) for x in range(256))
            self._mul_tables[c] = table
        return table

    def combine(self, coefficients: Sequence[int], buffers: Sequence[bytes]) -> bytes:
        """
        Calcule la combinaison linéaire sum(c_i * buf_i) sur des buffers de même taille.
        """
        size = len(buffers[0])
        terms = [
            int.from_bytes(buf if c == 1 else buf.translate(self.mul_table(c)), 'big')
            for c, buf in zip(coefficients, buffers) if c != 0
        ]
        return reduce(xor, terms, 0).to_bytes(size, 'big')


_FIELD: Optional[_GaloisField] = None


def _field() -> _GaloisField:
    global _FIELD
    if _FIELD is None:
        _FIELD = _GaloisField()
    return _FIELD


# ============================================================================
# ENCODEUR
# ============================================================================

class ReedSolomonEncoder:
    """
    Encodeur/Décodeur Reed-Solomon.

    Reed-Solomon Parameters:
        - K: Nombre de shards de données (partitions directes du chunk chiffré)
        - M: Nombre de shards de parité
        - N = K + M: Nombre total de shards
        - N'importe quels K shards sur N suffisent à reconstruire

    Attributes:
        k: Nombre de shards de données
        m: Nombre de shards de parité
        total_shards: k + m
        generator: Matrice génératrice (N lignes x K colonnes), les K
            premières lignes forment l'identité
        logger: Logger pour le debug

    Example:
        >>> encoder = ReedSolomonEncoder(k=4, m=2)
        >>> encoder.total_shards
        6
    """

    def __init__(self, k: int = DATA_SHARDS, m: int = PARITY_SHARDS,
                 logger: Optional[logging.Logger] = None):
        """
        Initialise l'encodeur Reed-Solomon.

        Args:
            k: Nombre de shards de données (défaut: 4)
            m: Nombre de shards de parité (défaut: 2)
            logger: Logger optionnel

        Raises:
            ChunkEncodingError: Si les paramètres sont invalides
        """
        self.k = k
        self.m = m
        self.total_shards = k + m
        self.logger = logger or logging.getLogger(__name__)

        # Validation des paramètres
        if k < 1:
            raise ChunkEncodingError("K must be at least 1", {"k": k})
        if m < 1:
            raise ChunkEncodingError("M must be at least 1", {"m": m})
        if k + m > 255:
            raise ChunkEncodingError(
                "K + M cannot exceed 255 (Galois Field GF(2^8) limit)",
                {"k": k, "m": m, "total": k + m}
            )

        self.field = _field()
        self.codec = RSCodec(self.m, nsize=self.total_shards, prim=GF_PRIMITIVE_POLY)
        self.generator = self._build_generator()
        self._decode_matrices: Dict[Tuple[int, ...], List[List[int]]] = {}
        self.logger.debug(f"Encodeur RS initialisé: k={k}, m={m}")

    def _build_generator(self) -> List[List[int]]:
        """
        Dérive la matrice génératrice du code systématique de reedsolo.

        Le code étant linéaire, la colonne i des lignes de parité est la
        parité du vecteur unitaire e_i.
        """
        identity = [[1 if i == j else 0 for j in range(self.k)] for i in range(self.k)]
        parity_cols = []
        for i in range(self.k):
            unit = bytes(1 if j == i else 0 for j in range(self.k))
            codeword = self.codec.encode(unit)
            parity_cols.append(list(codeword[self.k:]))
        parity_rows = [[parity_cols[i][p] for i in range(self.k)] for p in range(self.m)]
        return identity + parity_rows

    def _decode_matrix(self, used: Tuple[int, ...]) -> List[List[int]]:
        """
        Matrice de décodage (K x K) pour un ensemble de K shards présents.

        Le décodage étant linéaire, la colonne j est le message rendu par
        ``RSCodec.decode`` pour le mot valant 1 en position ``used[j]``,
        toutes les positions hors ``used`` étant déclarées effacées.

        Raises:
            ChunkDecodingError: Si reedsolo ne peut pas décoder le motif
        """
        matrix = self._decode_matrices.get(used)
        if matrix is not None:
            return matrix

        erasures = [i for i in range(self.total_shards) if i not in used]
        columns = []
        for position in used:
            codeword = bytearray(self.total_shards)
            codeword[position] = 1
            try:
                decoded, _, _ = self.codec.decode(bytes(codeword), erase_pos=erasures)
            except ReedSolomonError as e:
                raise ChunkDecodingError(
                    f"Reed-Solomon decode failed: {e}",
                    {"shards": list(used), "erasures": erasures}
                ) from e
            columns.append(list(decoded))

        matrix = [[columns[j][row] for j in range(self.k)] for row in range(self.k)]
        self._decode_matrices[used] = matrix
        return matrix

    # ========================================================================
    # OPÉRATIONS SUR BUFFERS
    # ========================================================================

    def split(self, data: bytes) -> List[bytes]:
        """
        Découpe des données en K partitions de même taille.

        Les données sont complétées par des zéros pour atteindre un
        multiple de K; le padding est retiré par ``join``.

        Raises:
            ChunkEncodingError: Si les données sont vides

        Example:
            >>> [len(p) for p in ReedSolomonEncoder().split(b'x' * 10)]
            [3, 3, 3, 3]
        """
        if not data:
            raise ChunkEncodingError("Cannot encode empty data")
        shard_size = (len(data) + self.k - 1) // self.k
        padded = bytes(data) + bytes(shard_size * self.k - len(data))
        return [padded[i * shard_size:(i + 1) * shard_size] for i in range(self.k)]

    def encode(self, data_shards: List[bytes]) -> List[bytes]:
        """
        Calcule les shards de parité.

        Args:
            data_shards: K shards de données de même taille

        Returns:
            Les N shards: les K shards de données suivis des M shards de parité

        Raises:
            ChunkEncodingError: Si le nombre ou la taille des shards est incorrect
        """
        if len(data_shards) != self.k:
            raise ChunkEncodingError(
                f"Expected {self.k} data shards, got {len(data_shards)}",
                {"k": self.k, "count": len(data_shards)}
            )
        sizes = {len(s) for s in data_shards}
        if len(sizes) != 1 or 0 in sizes:
            raise ChunkEncodingError("Data shards must be non-empty and of equal size",
                                     {"sizes": sorted(sizes)})

        parity = [self.field.combine(row, data_shards) for row in self.generator[self.k:]]
        return [bytes(s) for s in data_shards] + parity

    def verify(self, shards: List[bytes]) -> bool:
        """
        Vérifie que les shards de parité correspondent aux shards de données.

        Args:
            shards: Les N shards complets
        """
        if len(shards) != self.total_shards or any(s is None for s in shards):
            return False
        try:
            expected = self.encode(list(shards[:self.k]))
        except ChunkEncodingError:
            return False
        return all(a == b for a, b in zip(expected[self.k:], shards[self.k:]))

    def reconstruct(self, shards: List[Optional[bytes]]) -> List[bytes]:
        """
        Reconstruit les shards manquants (None) depuis les shards présents.

        Les K premiers shards présents sont utilisés pour résoudre le
        système; les shards présents supplémentaires servent à vérifier
        la cohérence du résultat.

        Args:
            shards: Liste de N éléments, None pour les shards manquants

        Returns:
            Les N shards complets

        Raises:
            InsufficientShardsError: Si moins de K shards sont présents
            ChunkDecodingError: Si les tailles diffèrent ou si le résultat
                est incohérent avec les shards supplémentaires
        """
        if len(shards) != self.total_shards:
            raise ChunkDecodingError(
                f"Expected {self.total_shards} shard slots, got {len(shards)}"
            )

        present = [i for i, s in enumerate(shards) if s is not None]
        if len(present) < self.k:
            raise InsufficientShardsError(
                f"Need at least {self.k} shards, only {len(present)} available",
                available=len(present),
                required=self.k
            )

        sizes = {len(shards[i]) for i in present}
        if len(sizes) != 1:
            raise ChunkDecodingError("Shards have different sizes", {"sizes": sorted(sizes)})

        used = present[:self.k]
        if used == list(range(self.k)):
            data_shards = [bytes(shards[i]) for i in used]
        else:
            decode_matrix = self._decode_matrix(tuple(used))
            inputs = [shards[i] for i in used]
            data_shards = [self.field.combine(row, inputs) for row in decode_matrix]
            self.logger.debug(f"Reconstruction RS depuis les shards {used}")

        full = self.encode(data_shards)
        for i in present[self.k:]:
            if full[i] != shards[i]:
                raise ChunkDecodingError(
                    "Reconstructed data is inconsistent with supplied shards",
                    {"shard_index": i}
                )
        return full

    def join(self, shards: List[bytes], size: int) -> bytes:
        """
        Concatène les shards de données et retire le padding.

        Raises:
            SizeMismatchError: Si les shards contiennent moins de ``size`` octets
        """
        data = b''.join(shards[:self.k])
        if size > len(data):
            raise SizeMismatchError(
                "Original size exceeds reconstructed data",
                expected=size,
                actual=len(data)
            )
        return data[:size]

    # ========================================================================
    # OPÉRATIONS SUR CHUNKS
    # ========================================================================

    def split_chunk(self, chunk: Chunk, ciphertext: bytes) -> List[Shard]:
        """
        Découpe le texte chiffré d'un chunk en N shards hachés.

        Les K premiers shards sont des partitions directes du texte
        chiffré, les M suivants sont la parité. Chaque hash est calculé
        une seule fois, ici.

        Args:
            chunk: Chunk dont ``size`` est la taille du texte chiffré
            ciphertext: Texte chiffré à découper

        Returns:
            Liste de N Shard

        Raises:
            SizeMismatchError: Si len(ciphertext) != chunk.size
        """
        if len(ciphertext) != chunk.size:
            raise SizeMismatchError(
                "Ciphertext length does not match chunk size",
                chunk_index=chunk.index,
                expected=chunk.size,
                actual=len(ciphertext)
            )

        try:
            encoded = self.encode(self.split(ciphertext))
        except ChunkEncodingError as e:
            e.details.setdefault('chunk_index', chunk.index)
            raise

        shards = [
            Shard(
                chunk_index=chunk.index,
                shard_index=i,
                data=data,
                hash=compute_chunk_hash(data),
                size=len(data)
            )
            for i, data in enumerate(encoded)
        ]
        self.logger.debug(
            f"Chunk {chunk.index} encodé: {self.k} data + {self.m} parity shards "
            f"de {shards[0].size} bytes"
        )
        return shards

    def reconstruct_chunk(self, shards: List[Shard], original_size: int) -> bytes:
        """
        Reconstruit le texte chiffré d'un chunk depuis au moins K shards.

        Les vérifications sont faites dans cet ordre, chacune avec son
        erreur: nombre de shards, taille originale, appartenance au même
        chunk, hash de chaque shard (avant tout calcul), index valides et
        uniques.

        Args:
            shards: Shards disponibles (n'importe quel sous-ensemble de taille >= K)
            original_size: Taille du texte chiffré d'origine

        Returns:
            Le texte chiffré d'origine, octet pour octet

        Raises:
            InsufficientShardsError: Moins de K shards
            SizeMismatchError: original_size <= 0
            MixedChunksError: Shards de chunks différents
            ShardVerificationError: Hash d'un shard invalide
            InvalidShardIndexError: Index hors de [0, N)
            DuplicateShardIndexError: Index en double
            ChunkDecodingError: Résultat incohérent

        Example:
            >>> from shardfarm.models import Chunk
            >>> encoder = ReedSolomonEncoder()
            >>> data = b'ciphertext bytes' * 10
            >>> shards = encoder.split_chunk(Chunk.from_data(0, data), data)
            >>> encoder.reconstruct_chunk(shards[2:], len(data)) == data
            True
        """
        chunk_index = shards[0].chunk_index if shards else None

        if len(shards) < self.k:
            raise InsufficientShardsError(
                f"Need at least {self.k} shards, only {len(shards)} available",
                chunk_index=chunk_index,
                available=len(shards),
                required=self.k
            )

        if original_size <= 0:
            raise SizeMismatchError(
                "Original size must be positive",
                chunk_index=chunk_index,
                actual=original_size
            )

        mixed = sorted({s.chunk_index for s in shards})
        if len(mixed) > 1:
            raise MixedChunksError("Shards belong to different chunks", chunk_indices=mixed)

        for shard in shards:
            actual = compute_chunk_hash(shard.data)
            if actual != shard.hash:
                raise ShardVerificationError(
                    "Shard failed hash verification",
                    chunk_index=shard.chunk_index,
                    shard_index=shard.shard_index,
                    expected_hash=shard.hash,
                    actual_hash=actual
                )

        slots: List[Optional[bytes]] = [None] * self.total_shards
        for shard in shards:
            if not 0 <= shard.shard_index < self.total_shards:
                raise InvalidShardIndexError(
                    f"Shard index out of range [0, {self.total_shards})",
                    chunk_index=chunk_index,
                    shard_index=shard.shard_index
                )
            if slots[shard.shard_index] is not None:
                raise DuplicateShardIndexError(
                    "Duplicate shard index",
                    chunk_index=chunk_index,
                    shard_index=shard.shard_index
                )
            slots[shard.shard_index] = shard.data

        try:
            full = self.reconstruct(slots)
            return self.join(full, original_size)
        except ChunkDecodingError as e:
            e.chunk_index = chunk_index
            e.details.setdefault('chunk_index', chunk_index)
            raise
        except SizeMismatchError as e:
            e.chunk_index = chunk_index
            raise

    def get_encoding_info(self) -> Dict:
        """
        Retourne les informations sur la configuration d'encodage.

        Returns:
            Dictionnaire avec les paramètres d'encodage
        """
        return {
            'k': self.k,
            'm': self.m,
            'total_shards': self.total_shards,
            'min_recovery': self.k,
            'overhead_ratio': self.total_shards / self.k,
            'field': 'GF(2^8)',
            'primitive_poly': hex(GF_PRIMITIVE_POLY),
        }


def create_encoder(k: Optional[int] = None, m: Optional[int] = None,
                   logger: Optional[logging.Logger] = None) -> ReedSolomonEncoder:
    """
    Factory function pour créer un encodeur Reed-Solomon.

    Les paramètres absents sont lus dans la configuration.

    Example:
        >>> create_encoder().k
        4
    """
    rs_config = SHARDFARM_CONFIG['REED_SOLOMON']
    return ReedSolomonEncoder(
        k=k if k is not None else rs_config['K'],
        m=m if m is not None else rs_config['M'],
        logger=logger
    )
