"""Checkpoint I/O for the BERT assembler.

Checkpoints are written with :func:`torch.save` into a temporary file next
to the destination and moved into place with :func:`os.replace`, so an
interrupted write never damages an existing checkpoint.  Loading uses
``weights_only=True`` and checks the container format before anything is
handed back to the caller.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Union

import torch

from .exceptions import DeserializationError, ModelNotFoundError, ModelWriteError

logger = logging.getLogger(__name__)

CHECKPOINT_FORMAT = "bertstack"
CHECKPOINT_VERSION = 1
REQUIRED_KEYS = ("format", "version", "config", "output_layer", "state_dict")

PathLike = Union[str, os.PathLike]


def save_checkpoint(path: PathLike, payload: Dict[str, Any]) -> Path:
  """Atomically write ``payload`` to ``path``.

  Parameters
  ----------
  path:
      Destination file.  Missing parent directories are created.
  payload:
      Checkpoint contents; ``format`` and ``version`` are filled in.

  Returns
  -------
  Path
      The resolved destination.

  Raises
  ------
  ModelWriteError
      If the destination cannot be written.  An existing file at ``path``
      is left untouched.
  """
  destination = Path(path)
  payload = {"format": CHECKPOINT_FORMAT, "version": CHECKPOINT_VERSION, **payload}
  tmp_name = None
  try:
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
      prefix=f".{destination.name}.", suffix=".tmp", dir=destination.parent
    )
    with os.fdopen(fd, "wb") as handle:
      torch.save(payload, handle)
      handle.flush()
      os.fsync(handle.fileno())
    os.replace(tmp_name, destination)
    tmp_name = None
  except (OSError, RuntimeError) as exc:  # torch.save reports a full disk as RuntimeError
    raise ModelWriteError(f"Could not write model to '{destination}': {exc}") from exc
  finally:
    if tmp_name is not None and os.path.exists(tmp_name):
      os.remove(tmp_name)
  logger.debug("Wrote checkpoint %s", destination)
  return destination


def load_checkpoint(path: PathLike) -> Dict[str, Any]:
  """Read and validate a checkpoint written by :func:`save_checkpoint`.

  Raises
  ------
  ModelNotFoundError
      If ``path`` does not exist or is not a file.
  DeserializationError
      If the file cannot be unpickled or is not a checkpoint of a
      supported version.
  """
  source = Path(path)
  if not source.is_file():
    raise ModelNotFoundError(f"No saved model at '{source}'")

  try:
    payload = torch.load(source, map_location="cpu", weights_only=True)
  except Exception as exc:  # torch.load raises many types for foreign files
    raise DeserializationError(f"Could not read model from '{source}': {exc}") from exc

  if not isinstance(payload, dict):
    raise DeserializationError(f"'{source}' does not contain a model checkpoint")
  missing = [key for key in REQUIRED_KEYS if key not in payload]
  if missing:
    raise DeserializationError(f"'{source}' is missing checkpoint fields {missing}")
  if payload["format"] != CHECKPOINT_FORMAT:
    raise DeserializationError(
      f"'{source}' has format {payload['format']!r}, expected {CHECKPOINT_FORMAT!r}"
    )
  if payload["version"] != CHECKPOINT_VERSION:
    raise DeserializationError(
      f"'{source}' has unsupported version {payload['version']!r}"
    )
  if not isinstance(payload["config"], dict) or not isinstance(payload["state_dict"], dict):
    raise DeserializationError(f"'{source}' has a malformed config or state_dict")
  if not isinstance(payload["output_layer"], str):
    raise DeserializationError(f"'{source}' has a malformed output layer name")
  if not isinstance(payload.get("output_layer_kwargs") or {}, dict):
    raise DeserializationError(f"'{source}' has malformed output layer arguments")
  return payload
