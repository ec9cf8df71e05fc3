"""Output layers that sit on top of the encoder stack.

Every output layer derives from :class:`OutputLayer`: it turns the final
hidden states of the encoder into predictions and knows how to score
those predictions against targets.  The assembler only relies on this
interface, so any registered subclass can be selected when a
:class:`~bertstack.bert_model.BERT` object is built.

Three layers are provided:

* :class:`NegativeLogLikelihood` – per‑token log‑probabilities over the
  vocabulary, scored with the negative log‑likelihood.
* :class:`MaskedLanguageModelHead` – the BERT masked language modelling
  transform with decoder weights tied to the token embeddings.
* :class:`SequenceClassificationHead` – a [CLS] pooler followed by a
  linear classifier.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Type

import torch
from torch import nn
import torch.nn.functional as F

from .config import BertConfig
from .exceptions import InvalidConfigurationError

OUTPUT_LAYERS: Dict[str, Type["OutputLayer"]] = {}


def register_output_layer(cls: Type["OutputLayer"]) -> Type["OutputLayer"]:
  """Class decorator making an output layer restorable from a saved model."""
  OUTPUT_LAYERS[cls.__name__] = cls
  return cls


class OutputLayer(nn.Module):
  """Base class for the final stage of the network.

  Parameters
  ----------
  config:
      Model configuration.
  embeddings_weight:
      Token embedding matrix of shape ``(src_vocab_size, d_model)``.
      Layers that tie their decoder to the embeddings use it; others
      ignore it.
  """

  def __init__(
    self, config: BertConfig, embeddings_weight: Optional[nn.Parameter] = None
  ) -> None:
    super().__init__()
    self.config = config

  def extra_kwargs(self) -> Dict[str, Any]:
    """Constructor keyword arguments needed to rebuild this layer."""
    return {}

  def forward(self, sequence_output: torch.Tensor) -> torch.Tensor:
    raise NotImplementedError

  def loss(self, predictions: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
    raise NotImplementedError


@register_output_layer
class NegativeLogLikelihood(OutputLayer):
  """Project hidden states to vocabulary log‑probabilities.

  The loss is the negative log‑likelihood of the targets; positions whose
  target is ``-100`` are ignored.
  """

  def __init__(
    self, config: BertConfig, embeddings_weight: Optional[nn.Parameter] = None
  ) -> None:
    super().__init__(config, embeddings_weight)
    self.decoder = nn.Linear(config.d_model, config.src_vocab_size)

  def forward(self, sequence_output: torch.Tensor) -> torch.Tensor:
    """Return log‑probabilities of shape ``(batch, seq_len, src_vocab_size)``."""
    return F.log_softmax(self.decoder(sequence_output), dim=-1)

  def loss(self, predictions: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
    return F.nll_loss(
      predictions.reshape(-1, predictions.size(-1)),
      targets.reshape(-1),
      ignore_index=-100,
    )


@register_output_layer
class MaskedLanguageModelHead(OutputLayer):
  """Head for the masked language modelling objective.

  This head projects the hidden states back to the vocabulary space.
  It consists of a dense transformation, a non‑linearity, layer
  normalisation and a decoder.  The decoder reuses the token embedding
  weights when they are provided.
  """

  def __init__(
    self, config: BertConfig, embeddings_weight: Optional[nn.Parameter] = None
  ) -> None:
    super().__init__(config, embeddings_weight)
    self.dense = nn.Linear(config.d_model, config.d_model)
    self.layer_norm = nn.LayerNorm(config.d_model, eps=config.layer_norm_eps)
    self.decoder = nn.Linear(config.d_model, config.src_vocab_size, bias=False)
    self.bias = nn.Parameter(torch.zeros(config.src_vocab_size))
    if embeddings_weight is not None:
      # Tie decoder weight to the embeddings
      self.decoder.weight = embeddings_weight

  def forward(self, sequence_output: torch.Tensor) -> torch.Tensor:
    """Predict vocabulary logits of shape ``(batch, seq_len, src_vocab_size)``."""
    x = self.dense(sequence_output)
    x = F.gelu(x)
    x = self.layer_norm(x)
    x = self.decoder(x) + self.bias
    return x

  def loss(self, predictions: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
    return F.cross_entropy(
      predictions.reshape(-1, predictions.size(-1)),
      targets.reshape(-1),
      ignore_index=-100,
    )


@register_output_layer
class SequenceClassificationHead(OutputLayer):
  """Classify whole sequences from the first ([CLS]) position.

  The hidden state of the first token passes through a dense layer with
  ``tanh`` activation (the BERT pooler) and a linear classifier.

  Parameters
  ----------
  num_labels:
      Number of target classes.  Two reproduces the next sentence
      prediction head.
  """

  def __init__(
    self,
    config: BertConfig,
    embeddings_weight: Optional[nn.Parameter] = None,
    num_labels: int = 2,
  ) -> None:
    super().__init__(config, embeddings_weight)
    self.num_labels = num_labels
    self.pooler = nn.Linear(config.d_model, config.d_model)
    self.activation = nn.Tanh()
    self.classifier = nn.Linear(config.d_model, num_labels)

  def extra_kwargs(self) -> Dict[str, Any]:
    return {"num_labels": self.num_labels}

  def forward(self, sequence_output: torch.Tensor) -> torch.Tensor:
    """Return class logits of shape ``(batch, num_labels)``."""
    cls_token = sequence_output[:, 0]
    pooled_output = self.activation(self.pooler(cls_token))
    return self.classifier(pooled_output)

  def loss(self, predictions: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
    return F.cross_entropy(predictions.view(-1, self.num_labels), targets.view(-1))


OutputLayerFactory = Callable[..., OutputLayer]


def output_layer_name(factory: OutputLayerFactory) -> str:
  """Registry name of an output layer class."""
  name = getattr(factory, "__name__", type(factory).__name__)
  if OUTPUT_LAYERS.get(name) is not factory:
    raise InvalidConfigurationError(
      f"Output layer {name!r} is not registered; decorate it with "
      f"@register_output_layer."
    )
  return name
