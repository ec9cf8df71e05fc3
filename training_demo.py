"""Demonstration of training a BERT encoder on a toy dataset.

This script tokenises a handful of sentences, builds a small
:class:`~bertstack.bert_model.BERT` with a masked language modelling
output layer and trains it for a few epochs.  The goal is not to train a
useful model, but to show how the assembler, its masks and its
persistence fit together.  The trained network is written with
:meth:`~bertstack.bert_model.BERT.save_model`.

Usage
-----
Run this script with ``python training_demo.py`` from the repository
root.  ``MODEL_DIR`` (default ``results``) can be set in the environment
or a ``.env`` file.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Tuple

import torch
from torch.utils.data import Dataset, DataLoader
from transformers import BertTokenizer
from dotenv import load_dotenv

from bertstack.bert_model import BERT
from bertstack.heads import MaskedLanguageModelHead
from bertstack.init_rules import NormalInitialization
from bertstack.utils import get_torch_accelerator


def setup_logging() -> None:
  logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
  )


class ToyMaskedLanguageDataset(Dataset):
  """A toy dataset for masked language modelling.

  Every sentence is padded to ``max_length`` tokens.  Special tokens,
  padding included, are never selected for masking.
  """

  def __init__(
    self,
    tokenizer: BertTokenizer,
    sentences: List[str],
    max_length: int = 32,
    mlm_probability: float = 0.15,
  ) -> None:
    self.tokenizer = tokenizer
    self.mlm_probability = mlm_probability
    self.examples = []
    for sentence in sentences:
      enc = tokenizer(
        sentence,
        truncation=True,
        padding="max_length",
        max_length=max_length,
        return_tensors="pt",
      )
      input_ids = enc["input_ids"][0]
      masked_input_ids, labels = self.mask_tokens(input_ids.clone())
      self.examples.append({"input_ids": masked_input_ids, "labels": labels})

  def __len__(self) -> int:
    return len(self.examples)

  def __getitem__(self, idx: int) -> dict:
    return self.examples[idx]

  def mask_tokens(self, inputs: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """Prepare masked tokens inputs/labels for masked language modelling.

    ``-100`` tokens are ignored in the loss.  Special tokens are never
    masked.  Of the selected tokens 80% become [MASK], 10% a random token
    and 10% are kept unchanged.
    """
    labels = inputs.clone()
    probability_matrix = torch.full(labels.shape, self.mlm_probability)
    special_tokens_mask = self.tokenizer.get_special_tokens_mask(
      labels.tolist(), already_has_special_tokens=True
    )
    probability_matrix = probability_matrix.masked_fill(
      torch.tensor(special_tokens_mask, dtype=torch.bool), 0.0
    )
    masked_indices = torch.bernoulli(probability_matrix).bool()
    labels[~masked_indices] = -100

    indices_replaced = (
      torch.bernoulli(torch.full(labels.shape, 0.8)).bool() & masked_indices
    )
    inputs[indices_replaced] = self.tokenizer.mask_token_id

    indices_random = (
      torch.bernoulli(torch.full(labels.shape, 0.5)).bool()
      & masked_indices
      & ~indices_replaced
    )
    random_words = torch.randint(len(self.tokenizer), labels.shape, dtype=torch.long)
    inputs[indices_random] = random_words[indices_random]
    return inputs, labels


def main() -> None:
  setup_logging()
  logger = logging.getLogger(__name__)
  load_dotenv()
  model_dir = Path(os.getenv("MODEL_DIR", "results"))
  logger.info(f"Using MODEL_DIR at {model_dir.resolve()}")

  tokenizer = BertTokenizer.from_pretrained("bert-base-uncased")
  seq_len = 32

  sentences = [
    "The quick brown fox jumps over the lazy dog",
    "Transformers are revolutionary models",
    "My cat loves to sleep in the sun",
    "Artificial intelligence is advancing rapidly",
  ] * 4
  dataset = ToyMaskedLanguageDataset(tokenizer, sentences, max_length=seq_len)
  dataloader = DataLoader(dataset, batch_size=2, shuffle=True)

  bert = BERT(
    src_vocab_size=len(tokenizer),
    src_seq_len=seq_len,
    num_encoder_layers=2,
    d_model=128,
    num_heads=4,
    dropout=0.1,
    output_layer=MaskedLanguageModelHead,
    init_rule=NormalInitialization(std=0.02),
  )
  device = get_torch_accelerator()
  bert.to(device)
  bert.train()

  optimizer = torch.optim.AdamW(bert.parameters(), lr=5e-4)

  num_epochs = 3
  logger.info(f"Starting training for {num_epochs} epochs on {len(dataset)} examples")
  for epoch in range(num_epochs):
    total_loss = 0.0
    for batch in dataloader:
      optimizer.zero_grad()
      input_ids = batch["input_ids"].to(device)
      labels = batch["labels"].to(device)
      loss, _ = bert(input_ids, targets=labels)
      loss.backward()
      optimizer.step()
      total_loss += loss.item()
    avg_loss = total_loss / len(dataloader)
    logger.info(f"Epoch {epoch + 1}/{num_epochs}: average loss = {avg_loss:.4f}")

  model_path = model_dir / "toy_bert_mlm.bin"
  bert.save_model(model_path)
  logger.info(f"Trained model saved to {model_path}")


if __name__ == "__main__":
  main()
