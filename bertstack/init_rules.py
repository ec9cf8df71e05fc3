"""Parameter initialization rules.

An :class:`InitializationRule` produces initial values for a weight of a
given shape and applies itself to every module of a network: weight
matrices of linear and embedding layers are drawn from the rule, biases
are zeroed and layer normalization is reset to the identity transform.
The same rule is applied uniformly to every encoder layer.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

import torch
from torch import nn


class InitializationRule:
  """Base class for initialization rules.

  Parameters
  ----------
  generator:
      Optional random number generator making initialization
      reproducible independently of the global seed.
  """

  def __init__(self, generator: Optional[torch.Generator] = None) -> None:
    self.generator = generator

  def initialize(self, shape: Sequence[int]) -> torch.Tensor:
    """Return a fresh tensor of ``shape`` drawn from this rule."""
    raise NotImplementedError

  @torch.no_grad()
  def apply(self, network: nn.Module) -> nn.Module:
    """Re‑initialize every parameter of ``network`` in place.

    Tied parameters are visited once per owning module; the last draw wins.
    """
    for module in network.modules():
      if isinstance(module, (nn.Linear, nn.Embedding)):
        weight = module.weight
        weight.copy_(self.initialize(tuple(weight.shape)).to(weight))
      if isinstance(module, nn.Linear) and module.bias is not None:
        module.bias.zero_()
      if isinstance(module, nn.LayerNorm):
        module.weight.fill_(1.0)
        module.bias.zero_()
    return network

  @staticmethod
  def _fans(shape: Sequence[int]) -> tuple:
    # nn.Linear stores (out_features, in_features); nn.Embedding (num, dim).
    if len(shape) < 2:
      return shape[0], shape[0]
    receptive = math.prod(shape[2:]) if len(shape) > 2 else 1
    return shape[1] * receptive, shape[0] * receptive

  def __repr__(self) -> str:
    return f"{type(self).__name__}()"


class XavierInitialization(InitializationRule):
  """Glorot variance scaling, ``Var = gain^2 * 2 / (fan_in + fan_out)``.

  Parameters
  ----------
  gain:
      Multiplicative gain on the standard deviation.
  distribution:
      ``"uniform"`` or ``"normal"``.
  """

  def __init__(
    self,
    gain: float = 1.0,
    distribution: str = "uniform",
    generator: Optional[torch.Generator] = None,
  ) -> None:
    super().__init__(generator)
    if distribution not in ("uniform", "normal"):
      raise ValueError(f"Unknown distribution {distribution!r}")
    self.gain = gain
    self.distribution = distribution

  def initialize(self, shape: Sequence[int]) -> torch.Tensor:
    fan_in, fan_out = self._fans(shape)
    std = self.gain * math.sqrt(2.0 / float(fan_in + fan_out))
    if self.distribution == "uniform":
      bound = math.sqrt(3.0) * std
      values = torch.rand(*shape, generator=self.generator)
      return values * (2 * bound) - bound
    return torch.randn(*shape, generator=self.generator) * std

  def __repr__(self) -> str:
    return f"XavierInitialization(gain={self.gain}, distribution={self.distribution!r})"


class HeInitialization(InitializationRule):
  """Kaiming variance scaling for ReLU‑like activations, ``Var = 2 / fan_in``."""

  def initialize(self, shape: Sequence[int]) -> torch.Tensor:
    fan_in, _ = self._fans(shape)
    std = math.sqrt(2.0 / float(fan_in))
    return torch.randn(*shape, generator=self.generator) * std


class NormalInitialization(InitializationRule):
  """Truncated normal draws with a fixed standard deviation.

  This is the scheme of the original BERT release (``std=0.02``); values
  beyond two standard deviations are redrawn.
  """

  def __init__(self, std: float = 0.02, generator: Optional[torch.Generator] = None) -> None:
    super().__init__(generator)
    self.std = std

  def initialize(self, shape: Sequence[int]) -> torch.Tensor:
    values = torch.randn(*shape, generator=self.generator)
    outside = values.abs() > 2.0
    while outside.any():
      values[outside] = torch.randn(int(outside.sum()), generator=self.generator)
      outside = values.abs() > 2.0
    return values * self.std

  def __repr__(self) -> str:
    return f"NormalInitialization(std={self.std})"
