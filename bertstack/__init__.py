"""Top-level package for the BERT encoder assembler.

This module exposes the core classes used throughout the project.  Importing
from :mod:`bertstack` gives access to the assembler, its configuration,
the building blocks of the encoder stack, the output layers, the
initialization rules and the error types without referencing deeply nested
modules.
"""

from .config import BertConfig
from .exceptions import (
  BertError,
  DeserializationError,
  IncompatibleModelError,
  InvalidConfigurationError,
  ModelNotBuiltError,
  ModelNotFoundError,
  ModelWriteError,
  ShapeMismatchError,
)
from .masks import MaskProvider
from .embeddings import BertEmbeddings
from .multi_head_attention import MultiHeadSelfAttention
from .transformer_encoder_layer import TransformerEncoderLayer
from .heads import (
  OutputLayer,
  NegativeLogLikelihood,
  MaskedLanguageModelHead,
  SequenceClassificationHead,
  register_output_layer,
)
from .init_rules import (
  InitializationRule,
  XavierInitialization,
  HeInitialization,
  NormalInitialization,
)
from .bert_model import BERT, BertEncoder, BertNetwork, ModelState

__all__ = [
    "BERT",
    "BertConfig",
    "BertEmbeddings",
    "BertEncoder",
    "BertNetwork",
    "MaskProvider",
    "ModelState",
    "MultiHeadSelfAttention",
    "TransformerEncoderLayer",
    "OutputLayer",
    "NegativeLogLikelihood",
    "MaskedLanguageModelHead",
    "SequenceClassificationHead",
    "register_output_layer",
    "InitializationRule",
    "XavierInitialization",
    "HeInitialization",
    "NormalInitialization",
    "BertError",
    "DeserializationError",
    "IncompatibleModelError",
    "InvalidConfigurationError",
    "ModelNotBuiltError",
    "ModelNotFoundError",
    "ModelWriteError",
    "ShapeMismatchError",
]
