from __future__ import annotations

from typing import Iterable

import jax
import jax_dataclasses as jdc
import numpy as onp
from jax import numpy as jnp

from ._vector_values import Scalar, VectorValues


@jdc.pytree_dataclass
class Errors:
    """Ordered sequence of residual vectors, one per linear factor.

    Output type of forward operators and input type of adjoint operators. Entries
    can have different lengths; like `VectorValues`, they are concatenated into a
    single flat array, and the entry lengths are static metadata. Two `Errors`
    objects can only be combined when their entry lengths match.
    """

    flat: jax.Array
    """All residuals, concatenated. Shape should be `(sum(sizes),)`."""
    sizes: jdc.Static[tuple[int, ...]]
    """Length of each entry."""

    @staticmethod
    def make(values: Iterable[jax.Array | onp.ndarray]) -> Errors:
        """Build from one residual vector per entry."""
        values = tuple(
            jnp.atleast_1d(jnp.asarray(value, dtype=float)) for value in values
        )
        for value in values:
            assert value.ndim == 1, "Residuals should be vectors!"
        if len(values) == 0:
            return Errors(flat=jnp.zeros((0,), dtype=float), sizes=())
        return Errors(
            flat=jnp.concatenate(values, axis=0),
            sizes=tuple(value.shape[0] for value in values),
        )

    @staticmethod
    def from_vector_values(vector_values: VectorValues) -> Errors:
        """One entry per variable block, in layout order."""
        return Errors(flat=vector_values.storage, sizes=vector_values.layout.dims)

    @staticmethod
    def concatenate(*errors: Errors) -> Errors:
        if len(errors) == 0:
            return Errors.make(())
        return Errors(
            flat=jnp.concatenate([e.flat for e in errors], axis=0),
            sizes=sum((e.sizes for e in errors), start=()),
        )

    @property
    def values(self) -> tuple[jax.Array, ...]:
        """Residual vector of each entry."""
        offsets = [0] + onp.cumsum(self.sizes, dtype=int).tolist()
        return tuple(
            self.flat[start:stop] for start, stop in zip(offsets[:-1], offsets[1:])
        )

    def split(self, index: int) -> tuple[Errors, Errors]:
        """Partition into the first `index` entries and the rest."""
        assert 0 <= index <= len(self.sizes)
        offset = sum(self.sizes[:index])
        return (
            Errors(flat=self.flat[:offset], sizes=self.sizes[:index]),
            Errors(flat=self.flat[offset:], sizes=self.sizes[index:]),
        )

    def __len__(self) -> int:
        return len(self.sizes)

    def _check_sizes(self, other: Errors) -> None:
        assert isinstance(other, Errors)
        assert self.sizes == other.sizes, "Errors size mismatch!"

    def __add__(self, other: Errors) -> Errors:
        self._check_sizes(other)
        return Errors(self.flat + other.flat, self.sizes)

    def __sub__(self, other: Errors) -> Errors:
        self._check_sizes(other)
        return Errors(self.flat - other.flat, self.sizes)

    def __neg__(self) -> Errors:
        return Errors(-self.flat, self.sizes)

    def __mul__(self, scale: Scalar) -> Errors:
        return Errors(scale * self.flat, self.sizes)

    __rmul__ = __mul__

    def dot(self, other: Errors) -> jax.Array:
        self._check_sizes(other)
        return jnp.dot(self.flat, other.flat)

    def squared_norm(self) -> jax.Array:
        return jnp.sum(self.flat**2)

    def flatten(self) -> jax.Array:
        return self.flat
