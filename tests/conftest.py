"""pytest config: ensure repo root is on sys.path for importing ``bertstack``."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
import torch

# Prepend the repository root to sys.path so that the ``bertstack`` package
# is discoverable when running tests without installing it.
ROOT_DIR: Path = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
  sys.path.insert(0, str(ROOT_DIR))

from bertstack.config import BertConfig  # noqa: E402


@pytest.fixture(autouse=True)
def _seed() -> None:
  torch.manual_seed(0)


@pytest.fixture
def small_config() -> BertConfig:
  return BertConfig(
    src_vocab_size=100,
    src_seq_len=8,
    num_encoder_layers=2,
    d_model=32,
    num_heads=4,
    dim_ffn=64,
    dropout=0.0,
  )
