from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Hashable, Iterable, Mapping, Sequence, Union

import jax
import jax_dataclasses as jdc
import numpy as onp
from jax import numpy as jnp

Key = Hashable
"""Variables are identified by arbitrary hashable keys."""

Ordering = Sequence[Key]
"""Sequence of variable keys. Fixed for one solve cycle."""

Scalar = Union[float, jax.Array]


@dataclass(frozen=True)
class VectorLayout:
    """Describes how per-variable blocks are stored in a flattened vector.

    Note that this is a vanilla (frozen, hashable) dataclass -- not a PyTree. It
    is always used as static metadata, so two layouts compare equal exactly when
    they describe the same ordering of the same blocks.
    """

    keys: tuple[Key, ...]
    """Variable keys, in storage order."""
    dims: tuple[int, ...]
    """Dimension of each variable, aligned with `keys`."""
    offsets: tuple[int, ...]
    """Start index of each variable, aligned with `keys`."""
    dim: int
    """Total dimension of the storage vector."""

    @staticmethod
    def make(
        dim_from_key: Mapping[Key, int], ordering: Ordering | None = None
    ) -> VectorLayout:
        """Build a layout. If `ordering` is omitted, the mapping's insertion order
        is used."""
        keys = tuple(dim_from_key.keys()) if ordering is None else tuple(ordering)
        assert len(set(keys)) == len(keys), "Duplicate keys in ordering!"
        assert set(keys) == set(dim_from_key.keys()), (
            "Ordering must contain exactly the keys of the layout."
        )

        offsets = list[int]()
        offset = 0
        for key in keys:
            offsets.append(offset)
            offset += int(dim_from_key[key])
        return VectorLayout(
            keys=keys,
            dims=tuple(int(dim_from_key[key]) for key in keys),
            offsets=tuple(offsets),
            dim=offset,
        )

    @functools.cached_property
    def _position_from_key(self) -> dict[Key, int]:
        return {key: i for i, key in enumerate(self.keys)}

    def __contains__(self, key: object) -> bool:
        return key in self._position_from_key

    def __len__(self) -> int:
        return len(self.keys)

    def dim_of(self, key: Key) -> int:
        return self.dims[self._position_from_key[key]]

    def slice(self, key: Key) -> slice:
        """Storage slice occupied by a variable."""
        i = self._position_from_key[key]
        return slice(self.offsets[i], self.offsets[i] + self.dims[i])

    def dim_from_key(self) -> dict[Key, int]:
        return dict(zip(self.keys, self.dims))

    def reordered(self, ordering: Ordering) -> VectorLayout:
        """Same blocks, different storage order."""
        return VectorLayout.make(self.dim_from_key(), ordering)


@jdc.pytree_dataclass
class VectorValues:
    """Maps variable keys to real vectors.

    Values are stacked and flattened into a single storage vector. Arithmetic
    never mutates; every operation returns a new object with the same layout.
    """

    storage: jax.Array
    """Values of all variables, concatenated in layout order."""

    layout: jdc.Static[VectorLayout]
    """Metadata for how variables are stored."""

    @staticmethod
    def zeros(layout: VectorLayout) -> VectorValues:
        return VectorValues(storage=jnp.zeros(layout.dim, dtype=float), layout=layout)

    @staticmethod
    def from_flat(vector: jax.Array | onp.ndarray, layout: VectorLayout) -> VectorValues:
        """Reconstruct a keyed vector from a flat numeric vector."""
        storage = jnp.asarray(vector, dtype=float)
        assert storage.shape == (layout.dim,), (
            f"Expected vector of shape {(layout.dim,)}, got {storage.shape}."
        )
        return VectorValues(storage=storage, layout=layout)

    @staticmethod
    def from_blocks(blocks: Iterable[jax.Array], layout: VectorLayout) -> VectorValues:
        """Build from one block per variable, in layout order."""
        blocks = tuple(blocks)
        assert len(blocks) == len(layout)
        if len(blocks) == 0:
            return VectorValues.zeros(layout)
        return VectorValues(
            storage=jnp.concatenate(
                [jnp.asarray(block, dtype=float).reshape(-1) for block in blocks]
            ),
            layout=layout,
        )

    @staticmethod
    def from_dict(
        values: Mapping[Key, jax.Array | onp.ndarray | Sequence[float] | float],
        ordering: Ordering | None = None,
    ) -> VectorValues:
        """Create from a key -> vector mapping. Scalars are treated as 1D vectors."""
        blocks = {
            key: jnp.atleast_1d(jnp.asarray(value, dtype=float))
            for key, value in values.items()
        }
        for key, block in blocks.items():
            assert block.ndim == 1, f"Value for {key} should be a vector!"
        layout = VectorLayout.make(
            {key: block.shape[0] for key, block in blocks.items()}, ordering
        )
        return VectorValues.from_blocks((blocks[key] for key in layout.keys), layout)

    def __getitem__(self, key: Key) -> jax.Array:
        return self.storage[self.layout.slice(key)]

    def __contains__(self, key: object) -> bool:
        return key in self.layout

    def keys(self) -> tuple[Key, ...]:
        return self.layout.keys

    def as_dict(self) -> dict[Key, jax.Array]:
        """Grab values as a key -> vector dictionary."""
        return {key: self[key] for key in self.layout.keys}

    def blocks(self) -> tuple[jax.Array, ...]:
        return tuple(self[key] for key in self.layout.keys)

    def flatten(self, ordering: Ordering | None = None) -> jax.Array:
        """Flatten into a single vector, optionally in a different ordering."""
        if ordering is None:
            return self.storage
        return self.update_layout(self.layout.reordered(ordering)).storage

    def update_layout(self, layout: VectorLayout) -> VectorValues:
        """Returns a new object representing the same key->value mapping, but with
        an updated storage layout."""

        # No-op if layouts already match.
        if self.layout == layout:
            return self

        assert self.layout.dim == layout.dim
        assert set(self.layout.keys) == set(layout.keys)

        shuffle_indices = onp.zeros(layout.dim, dtype=onp.int32)
        for key in layout.keys:
            source = self.layout.slice(key)
            target = layout.slice(key)
            shuffle_indices[target] = onp.arange(source.start, source.stop)

        return VectorValues(storage=self.storage[shuffle_indices], layout=layout)

    def _check_layout(self, other: VectorValues) -> None:
        assert isinstance(other, VectorValues)
        assert self.layout == other.layout, "Layout mismatch!"

    def __add__(self, other: VectorValues) -> VectorValues:
        self._check_layout(other)
        return VectorValues(self.storage + other.storage, self.layout)

    def __sub__(self, other: VectorValues) -> VectorValues:
        self._check_layout(other)
        return VectorValues(self.storage - other.storage, self.layout)

    def __neg__(self) -> VectorValues:
        return VectorValues(-self.storage, self.layout)

    def __mul__(self, scale: Scalar) -> VectorValues:
        return VectorValues(scale * self.storage, self.layout)

    __rmul__ = __mul__

    def dot(self, other: VectorValues) -> jax.Array:
        self._check_layout(other)
        return jnp.dot(self.storage, other.storage)

    def squared_norm(self) -> jax.Array:
        return jnp.sum(self.storage**2)

    def __repr__(self) -> str:
        contents = "\n".join(
            f"    {key}: {onp.asarray(self[key])}" for key in self.layout.keys
        )
        return f"VectorValues(\n{contents}\n)"
