import argparse
import json

import pytest
import torch

from pagedseq.engine_config import EngineConfig
from pagedseq.model_config import ModelConfig

HF_CONFIG = {
    "model_type": "qwen2",
    "num_hidden_layers": 2,
    "num_attention_heads": 4,
    "num_key_value_heads": 2,
    "hidden_size": 64,
    "vocab_size": 100,
    "max_position_embeddings": 2048,
    "eos_token_id": [7, 8],
    "torch_dtype": "bfloat16",
}


@pytest.fixture
def model_dir(tmp_path):
    (tmp_path / "config.json").write_text(json.dumps(HF_CONFIG))
    return tmp_path


def test_engine_config_defaults():
    config = EngineConfig(model_path="/models/x")
    assert config.max_num_batched_tokens == 16384
    assert config.max_num_seqs == 512
    assert config.max_model_len == 4096
    assert config.gpu_mem_utilization == 0.9
    assert config.tensor_parallel_degree == 1
    assert not config.enforce_eager
    assert config.block_size == 256
    assert config.max_blocks_per_seq == 16
    config.validate()


@pytest.mark.parametrize("overrides, message", [
    (dict(max_num_seqs=0), "max_num_seqs"),
    (dict(gpu_mem_utilization=1.5), "gpu_mem_utilization"),
    (dict(max_num_batched_tokens=1024), "max_num_batched_tokens"),
    (dict(block_size=16), "block_size 16 does not match"),
])
def test_engine_config_validate(overrides, message):
    with pytest.raises(ValueError, match=message):
        EngineConfig(model_path="/models/x", **overrides).validate()


def test_engine_config_from_cli_args():
    parser = argparse.ArgumentParser()
    EngineConfig.add_cli_args(parser)
    args = parser.parse_args(["--model-path", "/models/x", "--max-num-seqs", "8", "--enforce-eager"])
    config = EngineConfig.from_cli_args(args)
    assert config.model_path == "/models/x"
    assert config.max_num_seqs == 8
    assert config.enforce_eager
    assert config.block_size == 256


def test_model_config_from_path(model_dir):
    model_config = ModelConfig.load_from_model_path(str(model_dir))
    assert model_config.head_dim == 16
    assert model_config.num_kv_heads == 2
    assert model_config.eos_token_id == 7
    assert model_config.dtype == torch.bfloat16
    # 2 (k and v) * 2 layers * 2 kv heads * 16 head_dim * 2 bytes
    assert model_config.get_kvslot_size() == 256


def test_load_model_config_fills_engine_config(model_dir):
    config = EngineConfig(model_path=str(model_dir))
    config.load_model_config()
    assert config.eos_token_id == 7
    assert config.max_model_len == 2048


def test_compute_num_kvcache_blocks(model_dir):
    config = EngineConfig(model_path=str(model_dir), gpu_mem_utilization=0.5)
    model_config = config.load_model_config()
    block_bytes = 256 * config.block_size
    assert config.compute_num_kvcache_blocks(block_bytes * 10, model_config) == 5
    assert config.num_kvcache_blocks == 5
    with pytest.raises(ValueError, match="Not enough memory"):
        config.compute_num_kvcache_blocks(block_bytes, model_config)


def test_block_size_flag_must_match_sequence_block_size():
    parser = argparse.ArgumentParser()
    EngineConfig.add_cli_args(parser)
    args = parser.parse_args(["--model-path", "/models/x", "--block-size", "128"])
    with pytest.raises(ValueError, match="sequence block size 256"):
        EngineConfig.from_cli_args(args)


def test_model_config_ignores_unused_fields(tmp_path):
    minimal = {k: v for k, v in HF_CONFIG.items() if k not in ("model_type", "vocab_size")}
    (tmp_path / "config.json").write_text(json.dumps(minimal))
    model_config = ModelConfig.load_from_model_path(str(tmp_path))
    assert model_config.num_layers == 2
    assert model_config.head_dim == 16
    assert not hasattr(model_config, "vocab_size")
    assert not hasattr(model_config, "model_type")
