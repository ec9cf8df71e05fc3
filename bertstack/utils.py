"""Utility functions for the BERT assembler.

Helpers that are not specific to any particular layer: building common
masks, importing pretrained Hugging Face encoder weights and choosing an
accelerator.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Tuple

import torch

from .exceptions import InvalidConfigurationError

if TYPE_CHECKING:
  from .bert_model import BERT

logger = logging.getLogger(__name__)


def padding_mask_from_ids(input_ids: torch.Tensor, pad_token_id: int = 0) -> torch.Tensor:
  """Boolean key‑padding mask that is ``True`` where ``input_ids`` is padding."""
  return input_ids == pad_token_id


def causal_attention_mask(seq_len: int) -> torch.Tensor:
  """Boolean ``(seq_len, seq_len)`` look‑ahead mask blocking future keys."""
  return torch.ones(seq_len, seq_len, dtype=torch.bool).triu(diagonal=1)


_LAYER_SUBMODULES = {
  ("attention", "self", "query"): "attention.query",
  ("attention", "self", "key"): "attention.key",
  ("attention", "self", "value"): "attention.value",
  ("attention", "output", "dense"): "attention.out_proj",
  ("attention", "output", "LayerNorm"): "norm1",
  ("intermediate", "dense"): "intermediate",
  ("output", "dense"): "output",
  ("output", "LayerNorm"): "norm2",
}

_NORM_SUFFIXES = {"gamma": "weight", "beta": "bias"}


def rename_state_dict_keys(state_dict: Dict[str, Any], src_seq_len: int) -> Dict[str, Any]:
  """Map Hugging Face BERT state dict keys to :class:`BertNetwork` keys.

  The parameter names of a Hugging Face ``BertModel`` (optionally under a
  ``bert.`` prefix, as in ``BertForPreTraining``) are rewritten to the
  naming scheme of this project.  Two structural differences are folded
  away:

  * there are no segment embeddings here, so row 0 of the token type
    table is added to every position embedding, which is exact for
    single‑segment inputs;
  * the position table is cut to the first ``src_seq_len`` rows.

  The pooler is mapped onto ``output_layer.pooler``; keys without a
  counterpart are dropped.

  Parameters
  ----------
  state_dict:
      The original state dictionary from a Hugging Face BERT model.
  src_seq_len:
      Sequence length of the receiving model.

  Returns
  -------
  Dict[str, Any]
      A new state dictionary with remapped keys.
  """
  source = {
    (key[len("bert."):] if key.startswith("bert.") else key): value
    for key, value in state_dict.items()
  }
  new_state_dict: Dict[str, Any] = {}

  word = source.get("embeddings.word_embeddings.weight")
  if word is not None:
    new_state_dict["embeddings.word_embeddings.weight"] = word
  position = source.get("embeddings.position_embeddings.weight")
  if position is not None:
    position = position[:src_seq_len].clone()
    token_type = source.get("embeddings.token_type_embeddings.weight")
    if token_type is not None:
      position = position + token_type[0]
    new_state_dict["embeddings.position_embeddings.weight"] = position

  for key, value in source.items():
    parts = key.split(".")
    suffix = _NORM_SUFFIXES.get(parts[-1], parts[-1])
    if key.startswith("embeddings.LayerNorm."):
      new_state_dict[f"embeddings.layer_norm.{suffix}"] = value
    elif key.startswith("encoder.layer."):
      # encoder.layer.{idx}.{submodule...}.{weight|bias}
      layer_idx = parts[2]
      target = _LAYER_SUBMODULES.get(tuple(parts[3:-1]))
      if target is not None:
        new_state_dict[f"encoder.layers.{layer_idx}.{target}.{suffix}"] = value
    elif key.startswith("pooler.dense."):
      new_state_dict[f"output_layer.pooler.{suffix}"] = value
  return new_state_dict


def load_pretrained_encoder(bert: BERT, state_dict: Dict[str, Any]) -> Tuple[List[str], List[str]]:
  """Load Hugging Face BERT weights into a built :class:`~bertstack.bert_model.BERT`.

  Returns
  -------
  Tuple[List[str], List[str]]
      ``(missing, unexpected)`` keys, as reported by
      :meth:`torch.nn.Module.load_state_dict`.  Output layer parameters
      that have no pretrained counterpart are listed as missing.

  Raises
  ------
  InvalidConfigurationError
      If the model uses sinusoidal positions, which have no learned table
      to receive the pretrained one.
  """
  network = bert.network
  if bert.config.positional_encoding != "learned":
    raise InvalidConfigurationError(
      "Pretrained weights require positional_encoding='learned'."
    )
  renamed = rename_state_dict_keys(state_dict, bert.config.src_seq_len)
  own_keys = set(network.state_dict())
  unexpected = sorted(key for key in renamed if key not in own_keys)
  result = network.load_state_dict(
    {k: v for k, v in renamed.items() if k in own_keys}, strict=False
  )
  missing = list(result.missing_keys)
  if missing:
    logger.warning("Missing keys during load: %s", missing)
  if unexpected:
    logger.warning("Unexpected keys during load: %s", unexpected)
  return missing, unexpected


def get_torch_accelerator() -> torch.device:
  try:
    import torch_xla.core.xla_model as xm

    return xm.xla_device()
  except ImportError:
    pass

  if torch.cuda.is_available():
    return torch.device("cuda")

  if torch.backends.mps.is_available():
    return torch.device("mps")

  return torch.device("cpu")
