"""Attention and key‑padding masks shared by every encoder layer.

The :class:`MaskProvider` validates the two optional masks once, when the
network is built, and combines them into a single additive bias for the
attention logits.  One provider is created per model and handed by
reference to each :class:`~bertstack.transformer_encoder_layer.TransformerEncoderLayer`,
so all layers always observe the same masks.
"""

from __future__ import annotations

from typing import Optional

import torch

from .exceptions import ShapeMismatchError


def _as_additive(mask: torch.Tensor, dtype: torch.dtype) -> torch.Tensor:
  """Convert a boolean (``True`` = blocked) or real mask to an additive bias."""
  if mask.dtype == torch.bool:
    bias = torch.zeros(mask.shape, dtype=dtype, device=mask.device)
    return bias.masked_fill(mask, float("-inf"))
  return mask.to(dtype)


def _on(mask: torch.Tensor, device: Optional[torch.device]) -> torch.Tensor:
  return mask if device is None else mask.to(device)


class MaskProvider:
  """Holds the attention mask and the key‑padding mask of one model.

  Parameters
  ----------
  seq_len:
      Source sequence length the masks must be sized to.
  attention_mask:
      Optional mask of shape ``(seq_len, seq_len)`` or
      ``(batch_size, seq_len, seq_len)`` applied to every (query, key)
      pair, e.g. a look‑ahead mask.
  key_padding_mask:
      Optional mask of shape ``(seq_len,)``, ``(1, seq_len)`` or
      ``(batch_size, seq_len)`` blocking individual key positions.

  Both masks may be boolean, where ``True`` marks a blocked position, or
  floating point, in which case they are used as additive biases
  (``0`` to keep, ``-inf`` to block).  ``None`` or an empty tensor means
  the mask is absent.

  Raises
  ------
  ShapeMismatchError
      If a provided mask does not agree with ``seq_len`` or the two masks
      disagree on the batch size.
  """

  def __init__(
    self,
    seq_len: int,
    attention_mask: Optional[torch.Tensor] = None,
    key_padding_mask: Optional[torch.Tensor] = None,
  ) -> None:
    self.seq_len = seq_len
    self._attention_mask = self._check_attention_mask(attention_mask)
    self._key_padding_mask = self._check_key_padding_mask(key_padding_mask)

    attn_batch = self._batch_of(self._attention_mask, 3)
    pad_batch = self._batch_of(self._key_padding_mask, 2)
    if attn_batch is not None and pad_batch is not None and attn_batch != pad_batch:
      raise ShapeMismatchError(
        f"attention_mask batch size ({attn_batch}) does not match "
        f"key_padding_mask batch size ({pad_batch})."
      )

  @staticmethod
  def _freeze(mask: Optional[torch.Tensor]) -> Optional[torch.Tensor]:
    if mask is None or mask.numel() == 0:
      return None
    return mask.detach().clone()

  def _check_attention_mask(
    self, mask: Optional[torch.Tensor]
  ) -> Optional[torch.Tensor]:
    mask = self._freeze(mask)
    if mask is None:
      return None
    if mask.dim() not in (2, 3) or tuple(mask.shape[-2:]) != (self.seq_len, self.seq_len):
      raise ShapeMismatchError(
        f"attention_mask must have shape ({self.seq_len}, {self.seq_len}) or "
        f"(batch, {self.seq_len}, {self.seq_len}), got {tuple(mask.shape)}."
      )
    return mask

  def _check_key_padding_mask(
    self, mask: Optional[torch.Tensor]
  ) -> Optional[torch.Tensor]:
    mask = self._freeze(mask)
    if mask is None:
      return None
    if mask.dim() == 1:
      mask = mask.unsqueeze(0)
    if mask.dim() != 2 or mask.shape[-1] != self.seq_len:
      raise ShapeMismatchError(
        f"key_padding_mask must have shape ({self.seq_len},) or "
        f"(batch, {self.seq_len}), got {tuple(mask.shape)}."
      )
    return mask

  @staticmethod
  def _batch_of(mask: Optional[torch.Tensor], batched_dim: int) -> Optional[int]:
    if mask is None or mask.dim() != batched_dim or mask.shape[0] == 1:
      return None
    return mask.shape[0]

  @property
  def attention_mask(self) -> Optional[torch.Tensor]:
    return self._attention_mask

  @property
  def key_padding_mask(self) -> Optional[torch.Tensor]:
    return self._key_padding_mask

  @property
  def is_empty(self) -> bool:
    return self._attention_mask is None and self._key_padding_mask is None

  @property
  def batch_size(self) -> Optional[int]:
    """Batch size fixed by the masks, or ``None`` if they broadcast."""
    return self._batch_of(self._attention_mask, 3) or self._batch_of(
      self._key_padding_mask, 2
    )

  def combined_bias(
    self,
    dtype: torch.dtype = torch.float32,
    device: Optional[torch.device] = None,
  ) -> Optional[torch.Tensor]:
    """Merge both masks into one additive bias for the attention logits.

    The attention mask is broadcast over heads (and batch, when it is
    two‑dimensional); the key‑padding mask is broadcast over heads and
    query positions.

    Parameters
    ----------
    dtype:
        Floating point type of the attention logits.
    device:
        Device of the attention logits.

    Returns
    -------
    Optional[torch.Tensor]
        A tensor broadcastable to ``(batch_size, num_heads, seq_len, seq_len)``
        or ``None`` when no mask is present.
    """
    bias: Optional[torch.Tensor] = None
    if self._attention_mask is not None:
      attn = _as_additive(_on(self._attention_mask, device), dtype)
      if attn.dim() == 2:
        attn = attn.unsqueeze(0)
      # (batch|1, seq, seq) -> (batch|1, 1, seq, seq)
      bias = attn.unsqueeze(1)
    if self._key_padding_mask is not None:
      pad = _as_additive(_on(self._key_padding_mask, device), dtype)
      # (batch|1, seq) -> (batch|1, 1, 1, seq)
      pad = pad[:, None, None, :]
      bias = pad if bias is None else bias + pad
    return bias

  def check_batch(self, batch_size: int) -> None:
    """Ensure an input batch can be broadcast against the masks.

    Raises
    ------
    ShapeMismatchError
        If the masks were built for a different batch size.
    """
    expected = self.batch_size
    if expected is not None and expected != batch_size:
      raise ShapeMismatchError(
        f"Masks were built for batch size {expected}, got {batch_size}."
      )
