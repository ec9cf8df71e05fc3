"""Exceptions raised by the BERT assembler.

Every error derives from :class:`BertError` and, where one exists, from
the closest built-in exception so callers may catch either.  Configuration
errors surface at construction time; persistence errors surface from
:meth:`bertstack.bert_model.BERT.save_model` and
:meth:`bertstack.bert_model.BERT.load_model`.
"""

from __future__ import annotations


class BertError(Exception):
  """Base class for all errors raised by :mod:`bertstack`."""


class InvalidConfigurationError(BertError, ValueError):
  """Hyper‑parameters cannot describe a valid encoder.

  Raised for zero-sized vocabularies or sequences, a model width that is
  not divisible by the number of heads, and other out-of-range values.
  """


class ShapeMismatchError(BertError, ValueError):
  """A mask or input tensor does not agree with the configuration."""


class ModelNotBuiltError(BertError, RuntimeError):
  """A build-dependent operation was called on an unbuilt object."""


class ModelNotFoundError(BertError, FileNotFoundError):
  """No saved model exists at the requested path."""


class ModelWriteError(BertError, OSError):
  """A model could not be written to the requested path."""


class DeserializationError(BertError):
  """A saved model is corrupt or was written in an unsupported format."""


class IncompatibleModelError(DeserializationError):
  """A saved model does not match the configuration of the loading object.

  Attributes
  ----------
  differences:
      Mapping of field name to ``(expected, found)`` pairs.
  """

  def __init__(self, message: str, differences: dict | None = None) -> None:
    super().__init__(message)
    self.differences = dict(differences or {})
