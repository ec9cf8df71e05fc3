"""Embedding stage of the BERT encoder.

This module defines :class:`BertEmbeddings`, which looks up token vectors
of width ``d_model`` and adds position information, either from a learned
table or from the fixed sinusoidal encoding.  The sum is normalised and
passed through dropout before entering the encoder stack.
"""

from __future__ import annotations

import math

import torch
from torch import nn

from .config import BertConfig
from .exceptions import ShapeMismatchError


def sinusoidal_table(seq_len: int, d_model: int) -> torch.Tensor:
  """Build the ``(seq_len, d_model)`` sinusoidal position table.

  ``PE(pos, 2i) = sin(pos / 10000^(2i/d_model))`` and
  ``PE(pos, 2i+1) = cos(pos / 10000^(2i/d_model))``.
  """
  position = torch.arange(0, seq_len, dtype=torch.float).unsqueeze(1)
  div_term = torch.exp(
    torch.arange(0, d_model, 2).float() * (-math.log(10000.0) / d_model)
  )
  table = torch.zeros(seq_len, d_model)
  table[:, 0::2] = torch.sin(position * div_term)
  # Odd widths have one fewer cosine column.
  table[:, 1::2] = torch.cos(position * div_term[: d_model // 2])
  return table


class BertEmbeddings(nn.Module):
  """Construct embeddings from token and position information.

  Parameters
  ----------
  config:
      Configuration containing model hyper‑parameters.  Only those fields
      relevant to the embeddings are used.
  """

  def __init__(self, config: BertConfig) -> None:
    super().__init__()
    self.max_seq_len = config.src_seq_len
    self.word_embeddings = nn.Embedding(config.src_vocab_size, config.d_model)
    if config.positional_encoding == "learned":
      self.position_embeddings = nn.Embedding(config.src_seq_len, config.d_model)
    else:
      self.position_embeddings = None
      self.register_buffer(
        "position_table",
        sinusoidal_table(config.src_seq_len, config.d_model),
        persistent=False,
      )

    self.layer_norm = nn.LayerNorm(config.d_model, eps=config.layer_norm_eps)
    self.dropout = nn.Dropout(config.dropout)

  def forward(self, input_ids: torch.Tensor) -> torch.Tensor:
    """Embed the input token IDs.

    Parameters
    ----------
    input_ids:
        Tensor of shape ``(batch_size, seq_length)`` containing token
        indices, with ``seq_length <= src_seq_len``.

    Returns
    -------
    torch.Tensor
        The embedded representation of shape ``(batch_size, seq_length, d_model)``.

    Raises
    ------
    ShapeMismatchError
        If ``input_ids`` is not two‑dimensional or is longer than
        ``src_seq_len``.
    """
    if input_ids.dim() != 2:
      raise ShapeMismatchError(
        f"input_ids must have shape (batch, seq_len), got {tuple(input_ids.shape)}."
      )
    batch_size, seq_length = input_ids.size()
    if seq_length > self.max_seq_len:
      raise ShapeMismatchError(
        f"Sequence length {seq_length} exceeds src_seq_len {self.max_seq_len}."
      )

    word_embed = self.word_embeddings(input_ids)
    if self.position_embeddings is not None:
      position_ids = torch.arange(seq_length, dtype=torch.long, device=input_ids.device)
      position_ids = position_ids.unsqueeze(0).expand(batch_size, seq_length)
      pos_embed = self.position_embeddings(position_ids)
    else:
      pos_embed = self.position_table[:seq_length].unsqueeze(0).to(word_embed.dtype)

    embeddings = word_embed + pos_embed
    embeddings = self.layer_norm(embeddings)
    embeddings = self.dropout(embeddings)
    return embeddings
