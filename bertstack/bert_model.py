"""Encoder stack and the BERT assembler.

This module defines the encoder stack, the network that chains the
embedding stage, the encoder stack and an output layer, and the
:class:`BERT` assembler.  The assembler owns the configuration and the
masks, builds the network once at construction and saves or restores the
fully parameterised network.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import torch
from torch import nn

from .config import BertConfig
from .embeddings import BertEmbeddings
from .exceptions import (
  DeserializationError,
  IncompatibleModelError,
  InvalidConfigurationError,
  ModelNotBuiltError,
  ShapeMismatchError,
)
from .heads import OUTPUT_LAYERS, NegativeLogLikelihood, OutputLayer, output_layer_name
from .init_rules import InitializationRule, XavierInitialization
from .io import PathLike, load_checkpoint, save_checkpoint
from .masks import MaskProvider
from .transformer_encoder_layer import TransformerEncoderLayer

logger = logging.getLogger(__name__)


def _to_cpu(tensor: Optional[torch.Tensor]) -> Optional[torch.Tensor]:
  return None if tensor is None else tensor.cpu()


class BertEncoder(nn.Module):
  """Stack of transformer encoder layers.

  Parameters
  ----------
  config:
      Model configuration specifying the number of layers and other
      hyper‑parameters.
  masks:
      Mask provider handed by reference to every layer.
  """

  def __init__(self, config: BertConfig, masks: MaskProvider) -> None:
    super().__init__()
    self.masks = masks
    self.layers = nn.ModuleList(
      [TransformerEncoderLayer(config, masks) for _ in range(config.num_encoder_layers)]
    )

  def forward(
    self,
    hidden_states: torch.Tensor,
    output_hidden_states: bool = False,
    output_attentions: bool = False,
  ) -> Tuple[torch.Tensor, Optional[List[torch.Tensor]], Optional[List[torch.Tensor]]]:
    """Apply the encoder stack to the hidden states.

    Parameters
    ----------
    hidden_states:
        Input tensor of shape ``(batch_size, seq_len, d_model)``.
    output_hidden_states:
        Whether to return a list of all hidden states for every layer.
    output_attentions:
        Whether to return attention probabilities for each layer.

    Returns
    -------
    Tuple containing:
        - last hidden states of shape ``(batch_size, seq_len, d_model)``,
        - list of hidden states from each layer if requested,
        - list of attention probabilities if requested.
    """
    all_hidden_states: Optional[List[torch.Tensor]] = (
      [] if output_hidden_states else None
    )
    all_attentions: Optional[List[torch.Tensor]] = [] if output_attentions else None
    for layer in self.layers:
      if all_hidden_states is not None:
        all_hidden_states.append(hidden_states)

      hidden_states, attn_probs = layer(hidden_states)

      if all_attentions is not None:
        all_attentions.append(attn_probs)

    if all_hidden_states is not None:
      all_hidden_states.append(hidden_states)

    return hidden_states, all_hidden_states, all_attentions


class BertNetwork(nn.Module):
  """Embeddings, encoder stack and output layer chained into one module.

  Parameters
  ----------
  config:
      Model configuration.
  masks:
      Mask provider shared by all encoder layers.
  output_layer:
      Output layer class (or factory) called as
      ``output_layer(config, embeddings_weight, **output_layer_kwargs)``.
  output_layer_kwargs:
      Extra keyword arguments for the output layer.
  """

  def __init__(
    self,
    config: BertConfig,
    masks: MaskProvider,
    output_layer=NegativeLogLikelihood,
    output_layer_kwargs: Optional[Dict[str, Any]] = None,
  ) -> None:
    super().__init__()
    self.config = config
    self.masks = masks
    self.embeddings = BertEmbeddings(config)
    self.encoder = BertEncoder(config, masks)
    self.output_layer: OutputLayer = output_layer(
      config, self.embeddings.word_embeddings.weight, **(output_layer_kwargs or {})
    )

  def encode(
    self,
    input_ids: torch.Tensor,
    output_hidden_states: bool = False,
    output_attentions: bool = False,
  ) -> Tuple[torch.Tensor, Optional[List[torch.Tensor]], Optional[List[torch.Tensor]]]:
    """Run the embedding stage and the encoder stack.

    Returns the same tuple as :meth:`BertEncoder.forward`.
    """
    self.masks.check_batch(input_ids.size(0))
    if not self.masks.is_empty and input_ids.size(-1) != self.config.src_seq_len:
      # Masks are sized to src_seq_len and cannot be cut to a shorter input.
      raise ShapeMismatchError(
        f"Masked inputs must have length {self.config.src_seq_len}, "
        f"got {input_ids.size(-1)}."
      )
    embedding_output = self.embeddings(input_ids)
    return self.encoder(
      embedding_output,
      output_hidden_states=output_hidden_states,
      output_attentions=output_attentions,
    )

  def forward(
    self,
    input_ids: torch.Tensor,
    targets: Optional[torch.Tensor] = None,
  ) -> Union[torch.Tensor, Tuple[torch.Tensor, torch.Tensor]]:
    """Compute predictions and, when ``targets`` are given, the loss.

    Parameters
    ----------
    input_ids:
        Tensor of shape ``(batch_size, seq_len)`` with token IDs.
    targets:
        Optional targets understood by the output layer's ``loss``.

    Returns
    -------
    ``predictions`` or ``(loss, predictions)``.
    """
    sequence_output, _, _ = self.encode(input_ids)
    predictions = self.output_layer(sequence_output)
    if targets is None:
      return predictions
    return self.output_layer.loss(predictions, targets), predictions


class ModelState(enum.Enum):
  UNBUILT = "unbuilt"
  BUILT = "built"


class BERT:
  """Bidirectional Transformer encoder assembler.

  Builds the embedding stage, ``num_encoder_layers`` encoder layers that
  share one pair of masks, and the chosen output layer into a single
  :class:`BertNetwork`, initialises every parameter with the same rule and
  saves or restores the resulting network.

  Calling ``BERT()`` without sizes gives an unbuilt object.  Its only
  useful operation is :meth:`load_model`, which adopts the configuration
  stored in the checkpoint; everything else raises
  :class:`~bertstack.exceptions.ModelNotBuiltError`.

  Parameters
  ----------
  src_vocab_size:
      Size of the vocabulary.
  src_seq_len:
      Source sequence length.
  num_encoder_layers:
      Number of transformer encoder layers.
  d_model:
      Dimensionality of the model.
  num_heads:
      Number of attention heads.
  dropout:
      Dropout rate.
  attention_mask:
      Mask applied to every (query, key) pair, e.g. to black out future
      positions.  See :class:`~bertstack.masks.MaskProvider`.
  key_padding_mask:
      Mask blacking out specific key positions such as padding.
  dim_ffn:
      Hidden width of the feed‑forward networks; ``4 * d_model`` if omitted.
  output_layer:
      Registered :class:`~bertstack.heads.OutputLayer` subclass.
  output_layer_kwargs:
      Extra constructor arguments for the output layer.
  init_rule:
      Initialization rule applied to all parameters; defaults to
      :class:`~bertstack.init_rules.XavierInitialization`.
  positional_encoding:
      ``"learned"`` or ``"sinusoidal"``.
  layer_norm_eps:
      Epsilon of every layer normalization.

  Raises
  ------
  InvalidConfigurationError
      If the hyper‑parameters are invalid or only one of
      ``src_vocab_size`` / ``src_seq_len`` is given.
  ShapeMismatchError
      If a mask does not agree with ``src_seq_len``.
  """

  def __init__(
    self,
    src_vocab_size: Optional[int] = None,
    src_seq_len: Optional[int] = None,
    num_encoder_layers: int = 12,
    d_model: int = 512,
    num_heads: int = 8,
    dropout: float = 0.1,
    attention_mask: Optional[torch.Tensor] = None,
    key_padding_mask: Optional[torch.Tensor] = None,
    *,
    dim_ffn: Optional[int] = None,
    output_layer=NegativeLogLikelihood,
    output_layer_kwargs: Optional[Dict[str, Any]] = None,
    init_rule: Optional[InitializationRule] = None,
    positional_encoding: str = "learned",
    layer_norm_eps: float = 1e-12,
  ) -> None:
    self._config: Optional[BertConfig] = None
    self._masks: Optional[MaskProvider] = None
    self._network: Optional[BertNetwork] = None
    self._state = ModelState.UNBUILT
    self.init_rule = init_rule if init_rule is not None else XavierInitialization()

    if src_vocab_size is None and src_seq_len is None:
      return
    if src_vocab_size is None or src_seq_len is None:
      raise InvalidConfigurationError(
        "src_vocab_size and src_seq_len must be given together."
      )

    config = BertConfig(
      src_vocab_size=src_vocab_size,
      src_seq_len=src_seq_len,
      num_encoder_layers=num_encoder_layers,
      d_model=d_model,
      num_heads=num_heads,
      dim_ffn=dim_ffn,
      dropout=dropout,
      layer_norm_eps=layer_norm_eps,
      positional_encoding=positional_encoding,
    )
    output_layer_name(output_layer)
    masks = MaskProvider(config.src_seq_len, attention_mask, key_padding_mask)
    network = BertNetwork(config, masks, output_layer, output_layer_kwargs)
    self.init_rule.apply(network)
    self._adopt(config, masks, network)
    logger.info(
      "Built BERT: %d layers, d_model=%d, heads=%d, dim_ffn=%d, %s output, %d parameters",
      config.num_encoder_layers,
      config.d_model,
      config.num_heads,
      config.dim_ffn,
      output_layer.__name__,
      self.num_parameters(),
    )

  def _adopt(self, config: BertConfig, masks: MaskProvider, network: BertNetwork) -> None:
    self._config = config
    self._masks = masks
    self._network = network
    self._state = ModelState.BUILT

  def _require_built(self) -> BertNetwork:
    if self._network is None:
      raise ModelNotBuiltError(
        "BERT object has not been built; construct it with src_vocab_size and "
        "src_seq_len or call load_model first."
      )
    return self._network

  # Read-only views -----------------------------------------------------

  @property
  def state(self) -> ModelState:
    return self._state

  @property
  def is_built(self) -> bool:
    return self._state is ModelState.BUILT

  @property
  def config(self) -> Optional[BertConfig]:
    return self._config

  @property
  def masks(self) -> Optional[MaskProvider]:
    return self._masks

  @property
  def network(self) -> BertNetwork:
    return self._require_built()

  @property
  def output_layer(self) -> OutputLayer:
    return self._require_built().output_layer

  def _field(self, name: str) -> Optional[Any]:
    return None if self._config is None else getattr(self._config, name)

  @property
  def src_vocab_size(self) -> Optional[int]:
    return self._field("src_vocab_size")

  @property
  def src_seq_len(self) -> Optional[int]:
    return self._field("src_seq_len")

  @property
  def num_encoder_layers(self) -> Optional[int]:
    return self._field("num_encoder_layers")

  @property
  def d_model(self) -> Optional[int]:
    return self._field("d_model")

  @property
  def num_heads(self) -> Optional[int]:
    return self._field("num_heads")

  @property
  def dim_ffn(self) -> Optional[int]:
    return self._field("dim_ffn")

  @property
  def dropout(self) -> Optional[float]:
    return self._field("dropout")

  # Graph delegation ----------------------------------------------------

  def forward(
    self, input_ids: torch.Tensor, targets: Optional[torch.Tensor] = None
  ) -> Union[torch.Tensor, Tuple[torch.Tensor, torch.Tensor]]:
    """Run the network; see :meth:`BertNetwork.forward`."""
    return self._require_built()(input_ids, targets)

  __call__ = forward

  def encode(
    self, input_ids: torch.Tensor, **kwargs
  ) -> Tuple[torch.Tensor, Optional[List[torch.Tensor]], Optional[List[torch.Tensor]]]:
    """Return encoder outputs; see :meth:`BertNetwork.encode`."""
    return self._require_built().encode(input_ids, **kwargs)

  def train(self, mode: bool = True) -> "BERT":
    self._require_built().train(mode)
    return self

  def eval(self) -> "BERT":
    return self.train(False)

  def to(self, *args, **kwargs) -> "BERT":
    self._require_built().to(*args, **kwargs)
    return self

  def parameters(self) -> Iterator[nn.Parameter]:
    return self._require_built().parameters()

  def num_parameters(self) -> int:
    return sum(p.numel() for p in self.parameters())

  def state_dict(self) -> Dict[str, torch.Tensor]:
    return self._require_built().state_dict()

  # Persistence ---------------------------------------------------------

  def save_model(self, filepath: PathLike) -> None:
    """Save the network (structure and parameters) to ``filepath``.

    The file is replaced atomically.

    Raises
    ------
    ModelNotBuiltError
        If the object is unbuilt.
    ModelWriteError
        If ``filepath`` cannot be written.
    """
    network = self._require_built()
    masks = self._masks
    payload = {
      "config": self._config.to_dict(),
      "output_layer": output_layer_name(type(network.output_layer)),
      "output_layer_kwargs": network.output_layer.extra_kwargs(),
      "attention_mask": _to_cpu(masks.attention_mask),
      "key_padding_mask": _to_cpu(masks.key_padding_mask),
      "state_dict": {k: v.detach().cpu() for k, v in network.state_dict().items()},
    }
    path = save_checkpoint(filepath, payload)
    logger.info("Saved BERT model to %s", path)

  def load_model(self, filepath: PathLike) -> None:
    """Replace the network with the one saved at ``filepath``.

    A built object only accepts a checkpoint whose configuration and
    output layer match its own, and keeps its masks.  An unbuilt object
    adopts the stored configuration, output layer and masks.  On any
    failure the object is left exactly as it was.

    Raises
    ------
    ModelNotFoundError
        If ``filepath`` does not exist.
    IncompatibleModelError
        If the stored configuration or output layer differ from this
        object's.
    DeserializationError
        If the file is corrupt or its parameters do not fit the structure.
    """
    payload = load_checkpoint(filepath)
    try:
      config = BertConfig.from_dict(payload["config"])
    except InvalidConfigurationError as exc:
      raise DeserializationError(f"Invalid configuration in '{filepath}': {exc}") from exc

    layer_name = payload["output_layer"]
    if layer_name not in OUTPUT_LAYERS:
      raise DeserializationError(f"Unknown output layer {layer_name!r} in '{filepath}'")
    layer_kwargs = payload.get("output_layer_kwargs") or {}

    if self._network is not None:
      self._check_compatible(config, layer_name, layer_kwargs, filepath)
      masks = self._masks
      device = next(self._network.parameters()).device
    else:
      try:
        masks = MaskProvider(
          config.src_seq_len, payload.get("attention_mask"), payload.get("key_padding_mask")
        )
      except ShapeMismatchError as exc:
        raise DeserializationError(f"Stored masks in '{filepath}' are invalid: {exc}") from exc
      device = torch.device("cpu")

    try:
      network = BertNetwork(config, masks, OUTPUT_LAYERS[layer_name], layer_kwargs)
    except (TypeError, ValueError, RuntimeError) as exc:
      raise DeserializationError(
        f"Output layer {layer_name!r} in '{filepath}' cannot be rebuilt: {exc}"
      ) from exc
    try:
      network.load_state_dict(payload["state_dict"], strict=True)
    except (RuntimeError, KeyError) as exc:
      raise DeserializationError(
        f"Parameters in '{filepath}' do not fit the stored structure: {exc}"
      ) from exc
    network.to(device)
    if self._network is not None:
      network.train(self._network.training)

    self._adopt(config, masks, network)
    logger.info("Loaded BERT model from %s", filepath)

  def _check_compatible(
    self,
    config: BertConfig,
    layer_name: str,
    layer_kwargs: Dict[str, Any],
    filepath: PathLike,
  ) -> None:
    expected = self._config.to_dict()
    found = config.to_dict()
    differences = {
      key: (expected[key], found[key]) for key in expected if expected[key] != found[key]
    }
    current_layer = type(self._network.output_layer).__name__
    if layer_name != current_layer:
      differences["output_layer"] = (current_layer, layer_name)
    current_kwargs = self._network.output_layer.extra_kwargs()
    if layer_kwargs != current_kwargs:
      differences["output_layer_kwargs"] = (current_kwargs, layer_kwargs)
    if differences:
      logger.warning("Refusing to load %s: configuration differs %s", filepath, differences)
      raise IncompatibleModelError(
        f"Saved model '{filepath}' does not match this configuration: {differences}",
        differences,
      )

  def __repr__(self) -> str:
    if self._config is None:
      return "BERT(unbuilt)"
    return f"BERT({self._config})"
