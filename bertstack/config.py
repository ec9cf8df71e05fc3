"""Configuration dataclass for the BERT encoder.

This module defines the :class:`BertConfig` dataclass, which holds all
hyper‑parameters required to assemble a BERT encoder stack.  The record is
frozen: it is built once when a :class:`~bertstack.bert_model.BERT` object
is constructed and never mutated afterwards.  Invalid combinations are
rejected immediately so that no partially built network is ever produced.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Mapping, Optional

from .exceptions import DeserializationError, InvalidConfigurationError

POSITIONAL_ENCODINGS = ("learned", "sinusoidal")


@dataclass(frozen=True)
class BertConfig:
  """Structure holding hyper‑parameters for a BERT encoder.

  Attributes
  ----------
  src_vocab_size:
      Number of rows in the token embedding table.
  src_seq_len:
      Length of the source sequences.  Masks must be sized to this value
      and inputs may not exceed it.
  num_encoder_layers:
      Number of stacked transformer encoder layers.
  d_model:
      Width of the hidden representations.  Must be divisible by
      ``num_heads``.
  num_heads:
      Number of attention heads in every encoder layer.
  dim_ffn:
      Hidden width of the position‑wise feed‑forward network.  Defaults to
      four times ``d_model`` when left as ``None``.
  dropout:
      Dropout rate applied to embeddings, attention weights and the output
      of each sub‑layer.
  layer_norm_eps:
      Epsilon added to the denominator in layer normalization.
  positional_encoding:
      ``"learned"`` for a trainable position table or ``"sinusoidal"`` for
      the fixed encoding of Vaswani et al.
  """

  src_vocab_size: int
  src_seq_len: int
  num_encoder_layers: int = 12
  d_model: int = 512
  num_heads: int = 8
  dim_ffn: Optional[int] = None
  dropout: float = 0.1
  layer_norm_eps: float = 1e-12
  positional_encoding: str = "learned"

  def __post_init__(self) -> None:
    """Resolve defaults and validate the configuration.

    Raises
    ------
    InvalidConfigurationError
        If any field is out of range or ``d_model`` is not divisible by
        ``num_heads``.
    """
    if self.dim_ffn is None:
      # Frozen dataclass: bypass __setattr__ to resolve the default once.
      object.__setattr__(self, "dim_ffn", 4 * self.d_model)

    if self.src_vocab_size <= 0:
      raise InvalidConfigurationError(
        f"src_vocab_size must be positive, got {self.src_vocab_size}."
      )
    if self.src_seq_len <= 0:
      raise InvalidConfigurationError(
        f"src_seq_len must be positive, got {self.src_seq_len}."
      )
    if self.num_encoder_layers < 1:
      raise InvalidConfigurationError(
        f"num_encoder_layers must be at least 1, got {self.num_encoder_layers}."
      )
    if self.d_model <= 0 or self.num_heads <= 0 or self.dim_ffn <= 0:
      raise InvalidConfigurationError(
        f"d_model ({self.d_model}), num_heads ({self.num_heads}) and "
        f"dim_ffn ({self.dim_ffn}) must be positive."
      )
    if self.d_model % self.num_heads != 0:
      raise InvalidConfigurationError(
        f"d_model ({self.d_model}) must be divisible by num_heads "
        f"({self.num_heads})."
      )
    if not 0.0 <= self.dropout < 1.0:
      raise InvalidConfigurationError(
        f"dropout must lie in [0, 1), got {self.dropout}."
      )
    if self.positional_encoding not in POSITIONAL_ENCODINGS:
      raise InvalidConfigurationError(
        f"positional_encoding must be one of {POSITIONAL_ENCODINGS}, "
        f"got {self.positional_encoding!r}."
      )

  @property
  def head_dim(self) -> int:
    return self.d_model // self.num_heads

  def to_dict(self) -> Dict[str, Any]:
    """Return the configuration as a plain dictionary of primitives."""
    return asdict(self)

  @classmethod
  def from_dict(cls, data: Mapping[str, Any]) -> "BertConfig":
    """Rebuild a configuration written by :meth:`to_dict`.

    Raises
    ------
    DeserializationError
        If ``data`` holds unknown keys or misses required ones.
    InvalidConfigurationError
        If the stored values do not form a valid configuration.
    """
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
      raise DeserializationError(
        f"Unknown configuration fields: {sorted(unknown)}"
      )
    try:
      return cls(**dict(data))
    except TypeError as exc:
      raise DeserializationError(f"Malformed configuration: {exc}") from exc
