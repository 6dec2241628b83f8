import dataclasses
import argparse
import logging

from pagedseq.model_config import ModelConfig
from pagedseq.structs import Sequence
from pagedseq.utils import cdiv, GB

logger = logging.getLogger(__name__)

@dataclasses.dataclass
class EngineConfig:
    """
    Configuration for the engine, consumed once at startup.
    """

    # Model loading parameters
    model_path: str

    # Scheduling-related parameters
    max_num_batched_tokens: int = 16384
    max_num_seqs: int = 512
    max_model_len: int = 4096

    # PagedAttention-related parameters
    gpu_mem_utilization: float = 0.9
    block_size: int = 256

    # Switches
    tensor_parallel_degree: int = 1
    enforce_eager: bool = False

    # Filled in at startup, from the model directory and the memory profile
    eos_token_id: int = None
    num_kvcache_blocks: int = None

    @property
    def max_blocks_per_seq(self) -> int:
        return cdiv(self.max_model_len, self.block_size)

    def validate(self):
        """
        Check that the configuration is self-consistent, raise ValueError otherwise
        """
        for name in ("max_num_batched_tokens", "max_num_seqs", "max_model_len", "block_size", "tensor_parallel_degree"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} should be positive, got {getattr(self, name)}")
        if not 0 < self.gpu_mem_utilization <= 1:
            raise ValueError(f"gpu_mem_utilization should be in (0, 1], got {self.gpu_mem_utilization}")
        if self.max_num_batched_tokens < self.max_model_len:
            raise ValueError(
                f"max_num_batched_tokens {self.max_num_batched_tokens} is smaller than "
                f"max_model_len {self.max_model_len}, a full-length prompt could never be scheduled"
            )
        if self.block_size != Sequence.block_size:
            raise ValueError(
                f"block_size {self.block_size} does not match the sequence block size {Sequence.block_size}, "
                f"cache slots would be computed with the wrong block size"
            )

    def load_model_config(self) -> ModelConfig:
        """
        Load config.json from the model directory and fill in the fields derived from it
        """
        model_config = ModelConfig.load_from_model_path(self.model_path)
        self.eos_token_id = model_config.eos_token_id
        if model_config.max_position_embeddings is not None and self.max_model_len > model_config.max_position_embeddings:
            logger.info(
                f"[Config] Clamping max_model_len {self.max_model_len} to "
                f"max_position_embeddings {model_config.max_position_embeddings}"
            )
            self.max_model_len = model_config.max_position_embeddings
        return model_config

    def compute_num_kvcache_blocks(self, available_bytes: int, model_config: ModelConfig) -> int:
        """
        Derive the number of KV cache blocks that fit into `available_bytes`, after
        applying gpu_mem_utilization, and record it in num_kvcache_blocks
        """
        block_bytes = model_config.get_kvslot_size() * self.block_size // self.tensor_parallel_degree
        num_blocks = int(available_bytes * self.gpu_mem_utilization) // block_bytes
        if num_blocks <= 0:
            raise ValueError(
                f"Not enough memory for a single KV cache block ({available_bytes} bytes available, "
                f"{block_bytes} bytes per block)"
            )
        self.num_kvcache_blocks = num_blocks
        logger.info(f"[Config] Number of KV cache blocks: {num_blocks} ({num_blocks * block_bytes / GB:.2f} GB)")
        return num_blocks

    @staticmethod
    def add_cli_args(parser: argparse.ArgumentParser):
        """
        Add CLI arguments for the engine configuration
        """
        parser.add_argument(
            "--model-path",
            type=str,
            required=True,
            help="Path to the model directory (safetensors shards and config.json)",
        )

        parser.add_argument(
            "--max-num-batched-tokens",
            type=int,
            default=16384,
            help="Maximum number of tokens in a batch",
        )
        parser.add_argument(
            "--max-num-seqs",
            type=int,
            default=512,
            help="Maximum number of sequences in a batch",
        )
        parser.add_argument(
            "--max-model-len",
            type=int,
            default=4096,
            help="Maximum length of a sequence (prompt and completion)",
        )

        parser.add_argument(
            "--gpu-mem-utilization",
            type=float,
            default=0.9,
            help="Fraction of GPU memory to be used",
        )
        parser.add_argument(
            "--block-size",
            type=int,
            default=256,
            help="Block size for PagedAttention, must match Sequence.block_size",
        )

        parser.add_argument(
            "--tensor-parallel-degree",
            type=int,
            default=1,
            help="Tensor parallel degree",
        )
        parser.add_argument(
            "--enforce-eager",
            action="store_true",
            help="Always run the model eagerly, without graph capture",
        )

    @staticmethod
    def from_cli_args(args: argparse.Namespace) -> "EngineConfig":
        """
        Build an EngineConfig from arguments parsed with the flags of add_cli_args
        """
        field_names = {field.name for field in dataclasses.fields(EngineConfig)}
        config = EngineConfig(**{k: v for k, v in vars(args).items() if k in field_names})
        config.validate()
        return config
