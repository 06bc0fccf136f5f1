"""Type aliases to improve type hint readability."""

from typing import Callable, Optional, Sequence

import numpy as np
from jax import Array

type ResidualFn = Callable[..., Array | Sequence[Array]]
type Shape = tuple[int, ...]
type Seed = Sequence[Optional[Array]]
type Seeds = Sequence[Seed]
type BitVector = np.ndarray
