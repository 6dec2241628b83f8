import os
import json
import torch

class ModelConfig:
    """
    The configuration of a decoder-only model, as far as the KV cache and the
    weight loader are concerned.
    """

    def __init__(
        self,
        model_config: dict
    ):
        """
        Initialize a model configuration from a dict, which should be generated
        from a huggingface transformers config.json file.
        """
        self.num_layers = model_config["num_hidden_layers"]
        self.num_q_heads = model_config["num_attention_heads"]
        self.num_kv_heads = model_config.get("num_key_value_heads", self.num_q_heads)
        self.head_dim = model_config.get("head_dim") or model_config["hidden_size"] // self.num_q_heads
        self.max_position_embeddings = model_config.get("max_position_embeddings")

        eos_token_id = model_config.get("eos_token_id")
        # Some checkpoints list several EOS tokens, the first one is the canonical one
        if isinstance(eos_token_id, list):
            eos_token_id = eos_token_id[0] if eos_token_id else None
        self.eos_token_id = eos_token_id

        dtype_name = model_config.get("torch_dtype", "float16")
        self.dtype = getattr(torch, dtype_name, None)
        assert isinstance(self.dtype, torch.dtype), f"Unknown torch_dtype {dtype_name}"

    def get_kvslot_size(self, dtype: torch.dtype = None) -> int:
        """
        Get the size of one kv slot (the kv cache of one token across all layers) (in bytes)
        """
        dtype = dtype or self.dtype
        return 2 * self.num_layers * self.num_kv_heads * self.head_dim * dtype.itemsize

    @staticmethod
    def load_from_model_path(model_path: str) -> "ModelConfig":
        with open(os.path.join(model_path, "config.json"), "r", encoding="utf-8") as f:
            model_config_dict = json.loads(f.read())
        return ModelConfig(model_config_dict)
