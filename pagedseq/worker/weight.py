"""
Load a directory of safetensors shards into a model.

Every tensor in every `*.safetensors` file is reinterpreted from its raw
bytes, its name is rewritten through the model's packed modules mapping
(e.g. `q_proj` -> (`qkv_proj`, 0)), and it is handed to the model's
`load_weight()`. A tensor that the model has no parameter for is skipped with
a warning; anything structurally wrong with a file aborts the whole load.
"""

import os
import glob
import math
import logging
import dataclasses
from abc import ABC, abstractmethod
from typing import Callable, Optional

import torch
from safetensors import SafetensorError, deserialize
from tqdm import tqdm

logger = logging.getLogger(__name__)

PackedModulesMapping = dict[str, tuple[str, int]]

# on-disk dtype |-> (dtype the raw bytes are read as, runtime dtype)
_DTYPE_TABLE = {
    "F32": (torch.float32, torch.float32),
    "F16": (torch.float16, torch.float16),
    "BF16": (torch.bfloat16, torch.bfloat16),
    "I64": (torch.int64, torch.int64),
    "I32": (torch.int32, torch.uint32),     # Lossy: negative values wrap around
    "U8": (torch.uint8, torch.uint8),
    "I8": (torch.uint8, torch.uint8),       # Lossy: reinterpreted as unsigned
    "BOOL": (torch.uint8, torch.uint8),
}


class WeightLoadError(RuntimeError):
    """
    A structural failure while loading weights (unreadable file, malformed
    container, unsupported dtype). Aborts the whole load.
    """


class WeightLoadable(ABC):
    """
    WeightLoadable - The capability a model needs to be loaded by load_weights()

    Models whose on-disk tensors are merged into one in-memory parameter set
    `packed_modules_mapping`, mapping a substring of the on-disk name to the
    replacement substring and the shard index, e.g.

        packed_modules_mapping = {
            "q_proj": ("qkv_proj", 0),
            "k_proj": ("qkv_proj", 1),
            "v_proj": ("qkv_proj", 2),
        }
    """

    packed_modules_mapping: Optional[PackedModulesMapping] = None

    def get_packed_modules_mapping(self) -> Optional[PackedModulesMapping]:
        return self.packed_modules_mapping

    @abstractmethod
    def load_weight(self, name: str, weight: torch.Tensor, shard_id: Optional[int]) -> bool:
        """
        Load `weight` into the parameter called `name` (shard `shard_id` of it,
        if not None).

        Return False if the model has no such parameter.
        """
        raise NotImplementedError


@dataclasses.dataclass
class LoadResult:
    loaded: list[str] = dataclasses.field(default_factory=list)
    missing: list[str] = dataclasses.field(default_factory=list)


def resolve_target_name(tensor_name: str, mapping: Optional[PackedModulesMapping]) -> tuple[str, Optional[int]]:
    """
    Rewrite an on-disk tensor name into the model's parameter name.

    If several patterns occur in the name, the longest one wins, and among
    patterns of equal length the one declared first wins. Returns the name
    unchanged and None if no pattern matches.
    """
    if not mapping:
        return tensor_name, None
    for pattern in sorted(mapping, key=len, reverse=True):
        if pattern in tensor_name:
            replacement, shard_id = mapping[pattern]
            return tensor_name.replace(pattern, replacement), shard_id
    return tensor_name, None


def convert_dtype(dtype: str, tensor_name: str) -> torch.dtype:
    """
    Map a safetensors dtype name to the runtime torch dtype
    """
    if dtype not in _DTYPE_TABLE:
        raise WeightLoadError(f"Unsupported dtype {dtype} for tensor {tensor_name}")
    return _DTYPE_TABLE[dtype][1]


def create_tensor(tensor_name: str, dtype: str, shape: list[int], data: bytes) -> torch.Tensor:
    """
    Build a dense CPU tensor from the raw (little-endian) bytes of a safetensors entry
    """
    runtime_dtype = convert_dtype(dtype, tensor_name)
    storage_dtype = _DTYPE_TABLE[dtype][0]
    numel = math.prod(shape)
    expected_nbytes = numel * storage_dtype.itemsize
    if len(data) != expected_nbytes:
        raise WeightLoadError(
            f"Tensor {tensor_name} of dtype {dtype} and shape {list(shape)} should have "
            f"{expected_nbytes} bytes, got {len(data)}"
        )
    if numel == 0:
        tensor = torch.empty(shape, dtype=storage_dtype)
    else:
        tensor = torch.frombuffer(bytearray(data), dtype=storage_dtype).reshape(shape)
    if runtime_dtype != storage_dtype:
        tensor = tensor.view(runtime_dtype)
    return tensor


def _read_shard(file_path: str) -> list[tuple[str, dict]]:
    try:
        with open(file_path, "rb") as f:
            data = f.read()
    except OSError as err:
        raise WeightLoadError(f"Failed to read file {file_path}") from err
    try:
        return deserialize(data)
    except SafetensorError as err:
        raise WeightLoadError(f"Failed to parse safetensors file {file_path}") from err


def load_weights(model: WeightLoadable, path: str) -> LoadResult:
    """
    Load every tensor of every safetensors shard under `path` into `model`.

    Return the names of the parameters loaded and of those the model does not have.
    """
    if not os.path.isdir(path):
        raise WeightLoadError(f"Model path {path} is not a directory")
    files = sorted(glob.glob(os.path.join(glob.escape(path), "*.safetensors")))
    if not files:
        raise WeightLoadError(f"No safetensors files found in {path}")

    packed_modules_mapping = model.get_packed_modules_mapping()
    result = LoadResult()
    for file_path in tqdm(files, desc="Loading safetensors shards", unit="shard"):
        entries = _read_shard(file_path)
        logger.info(f"[Loader] Loading {len(entries)} tensors from {file_path}")
        for tensor_name, view in sorted(entries, key=lambda entry: entry[0]):
            param_name, shard_id = resolve_target_name(tensor_name, packed_modules_mapping)
            tensor = create_tensor(tensor_name, view["dtype"], view["shape"], view["data"])
            if model.load_weight(param_name, tensor, shard_id):
                result.loaded.append(param_name)
            else:
                logger.warning(f"[Loader] Parameter {param_name} not found in model, skipping tensor {tensor_name}")
                result.missing.append(param_name)
    return result


def make_packed_weight_loader(shard_sizes: list[int], dim: int = 0) -> Callable[[torch.nn.Parameter, torch.Tensor, int], None]:
    """
    Build a `weight_loader` for a parameter made of shards concatenated along
    `dim`, shard #i being `shard_sizes[i]` wide.
    """
    offsets = [0]
    for size in shard_sizes:
        offsets.append(offsets[-1] + size)

    def weight_loader(param: torch.nn.Parameter, loaded_weight: torch.Tensor, shard_id: int):
        if not 0 <= shard_id < len(shard_sizes):
            raise IndexError(f"Shard id {shard_id} out of range for {len(shard_sizes)} shards")
        shard = param.data.narrow(dim, offsets[shard_id], shard_sizes[shard_id])
        if shard.shape != loaded_weight.shape:
            raise WeightLoadError(
                f"Shard {shard_id} has shape {tuple(shard.shape)}, loaded weight has shape {tuple(loaded_weight.shape)}"
            )
        shard.copy_(loaded_weight)

    return weight_loader


class ModuleWeightLoader(WeightLoadable):
    """
    ModuleWeightLoader - Make a torch.nn.Module loadable by load_weights()

    Plain parameters are copied into directly. Packed parameters must carry a
    `weight_loader(param, loaded_weight, shard_id)` attribute, see
    make_packed_weight_loader().
    """

    def __init__(self, module: torch.nn.Module, packed_modules_mapping: PackedModulesMapping = None):
        self.module = module
        self.packed_modules_mapping = packed_modules_mapping or getattr(module, "packed_modules_mapping", None)
        self.params = dict(module.named_parameters())

    @torch.no_grad()
    def load_weight(self, name: str, weight: torch.Tensor, shard_id: Optional[int]) -> bool:
        param = self.params.get(name)
        if param is None:
            return False
        if shard_id is None:
            if param.shape != weight.shape:
                raise WeightLoadError(
                    f"Parameter {name} has shape {tuple(param.shape)}, loaded weight has shape {tuple(weight.shape)}"
                )
            param.data.copy_(weight)
        else:
            weight_loader = getattr(param, "weight_loader", None)
            if weight_loader is None:
                raise WeightLoadError(f"Packed parameter {name} has no weight_loader")
            weight_loader(param, weight, shard_id)
        return True
