"""Demonstration of running inference with the BERT assembler.

This script loads the pre‑trained ``bert-base-uncased`` weights from the
``transformers`` library into a :class:`~bertstack.bert_model.BERT`
encoder whose key padding mask is derived from the tokenised input, and
reports how closely its hidden states follow the reference
implementation.  The assembled model is then saved, restored into an
unbuilt object and run again to show that the checkpoint reproduces the
same outputs.

Usage
-----
Run this script with ``python inference_demo.py`` from the repository
root.  ``MODEL_DIR`` (default ``results``) can be set in the environment
or a ``.env`` file.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import torch
from transformers import BertTokenizer, BertModel as HFBertModel
from dotenv import load_dotenv

from bertstack.bert_model import BERT
from bertstack.heads import SequenceClassificationHead
from bertstack.utils import load_pretrained_encoder, padding_mask_from_ids


def setup_logging() -> None:
  logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
  )


def main() -> None:
  setup_logging()
  logger = logging.getLogger(__name__)
  load_dotenv()
  model_dir = Path(os.getenv("MODEL_DIR", "results"))
  logger.info(f"Using MODEL_DIR at {model_dir.resolve()}")

  hf_model_name = "bert-base-uncased"
  tokenizer = BertTokenizer.from_pretrained(hf_model_name)
  hf_model = HFBertModel.from_pretrained(hf_model_name)
  hf_model.eval()

  seq_len = 16
  encoded = tokenizer(
    "Hello, my dog is cute",
    return_tensors="pt",
    padding="max_length",
    truncation=True,
    max_length=seq_len,
  )
  input_ids = encoded["input_ids"]

  bert = BERT(
    src_vocab_size=hf_model.config.vocab_size,
    src_seq_len=seq_len,
    num_encoder_layers=hf_model.config.num_hidden_layers,
    d_model=hf_model.config.hidden_size,
    num_heads=hf_model.config.num_attention_heads,
    dropout=hf_model.config.hidden_dropout_prob,
    key_padding_mask=padding_mask_from_ids(input_ids, hf_model.config.pad_token_id),
    dim_ffn=hf_model.config.intermediate_size,
    output_layer=SequenceClassificationHead,
    layer_norm_eps=hf_model.config.layer_norm_eps,
  )
  load_pretrained_encoder(bert, hf_model.state_dict())
  bert.eval()

  with torch.no_grad():
    hf_seq_output = hf_model(
      input_ids=input_ids,
      attention_mask=encoded["attention_mask"],
      token_type_ids=torch.zeros_like(input_ids),
    ).last_hidden_state
    custom_seq_output, _, _ = bert.encode(input_ids)

  diff = (custom_seq_output - hf_seq_output).abs().mean().item()
  logger.info(f"Mean absolute difference between custom and HF outputs: {diff:.6f}")

  model_path = model_dir / "bert_base_uncased_encoder.bin"
  bert.save_model(model_path)

  restored = BERT()
  restored.load_model(model_path)
  restored.eval()
  with torch.no_grad():
    restored_seq_output, _, _ = restored.encode(input_ids)
  logger.info(
    f"Restored model reproduces outputs: {torch.equal(custom_seq_output, restored_seq_output)}"
  )

  torch.save(
    {
      "input_ids": input_ids,
      "hf_seq_output": hf_seq_output,
      "custom_seq_output": custom_seq_output,
    },
    model_dir / "inference_outputs.pt",
  )
  logger.info(f"Inference outputs saved to {model_dir / 'inference_outputs.pt'}")


if __name__ == "__main__":
  main()
