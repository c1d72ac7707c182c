#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Deterministic keyspace for the assignment scanner.

A key is <prefix><suffix>, where suffix is `depth` symbols drawn from an ordered
alphabet. The suffix of global index i is the base-A digits of i (most
significant first) mapped through the alphabet, so:

  alphabet=AB, depth=2  ->  0:AA 1:AB 2:BA 3:BB

Resuming at index N is O(1): iteration just starts its counter at N.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, Tuple

DEFAULT_PREFIX = "OPPQQRRSSTTUUU"
DEFAULT_ALPHABET = "MNOPQRSTUVWXY"
DEFAULT_DEPTH = 6


@dataclass(frozen=True)
class KeySpace:
    alphabet: str = DEFAULT_ALPHABET
    depth: int = DEFAULT_DEPTH
    prefix: str = DEFAULT_PREFIX
    _index: Dict[str, int] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.alphabet:
            raise ValueError("alphabet is empty")
        if len(set(self.alphabet)) != len(self.alphabet):
            raise ValueError(f"alphabet has repeated symbols: {self.alphabet!r}")
        if self.depth <= 0:
            raise ValueError("depth must be > 0")
        self._index.update({ch: i for i, ch in enumerate(self.alphabet)})

    @property
    def base(self) -> int:
        return len(self.alphabet)

    @property
    def size(self) -> int:
        return self.base ** self.depth

    def suffix_at(self, index: int) -> str:
        if index < 0 or index >= self.size:
            raise ValueError(f"index out of range for depth={self.depth}: {index}")
        chars = [self.alphabet[0]] * self.depth
        x = index
        for pos in range(self.depth - 1, -1, -1):
            x, rem = divmod(x, self.base)
            chars[pos] = self.alphabet[rem]
        return "".join(chars)

    def key_at(self, index: int) -> str:
        return self.prefix + self.suffix_at(index)

    def index_of(self, key: str) -> int:
        """Inverse of key_at()."""
        if not key.startswith(self.prefix):
            raise ValueError(f"Invalid key '{key}': missing prefix '{self.prefix}'")
        suffix = key[len(self.prefix):]
        if len(suffix) != self.depth:
            raise ValueError(f"Invalid key '{key}': suffix length {len(suffix)} != {self.depth}")
        x = 0
        for ch in suffix:
            if ch not in self._index:
                raise ValueError(f"Invalid key '{key}': '{ch}' not in alphabet")
            x = x * self.base + self._index[ch]
        return x

    def iter_keys(self, from_index: int = 0) -> Iterator[Tuple[int, str]]:
        """Yield (index, key) from from_index to the end of the keyspace."""
        if from_index < 0:
            raise ValueError(f"from_index must be >= 0: {from_index}")
        for idx in range(from_index, self.size):
            yield idx, self.key_at(idx)
