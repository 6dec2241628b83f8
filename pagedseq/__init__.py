# Configuration
from pagedseq.engine_config import EngineConfig
from pagedseq.model_config import ModelConfig

# Per-request state
from pagedseq.structs import SamplingParams, Sequence, SequenceStatus, IdGenerator, AtomicIdGenerator

# Attention context and batch preparation
from pagedseq.worker.context import Context, ContextHolder, get_context, set_context, reset_context
from pagedseq.worker.batch import prepare_prefill, prepare_decode, update_sequences

# Weight loading
from pagedseq.worker.weight import WeightLoadable, ModuleWeightLoader, WeightLoadError, load_weights
