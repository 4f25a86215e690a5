import pytest
import safetensors.torch
import torch

import fast_lora
from fast_lora.engine.checkpoint.state_dict import (
    export_safetensors_metadata,
    extract_tensors,
    import_safetensors_metadata,
    inject_tensors,
    load_adapters,
    read_adapter_metadata,
    save_adapters,
)
from fast_lora.errors import AlreadyMergedError, InvalidAdapterFileError, MissingKeyError, ShapeMismatchError
from fast_lora.layers.lora.builder import LoRABuilder
from fast_lora.layers.lora.config import LoRABuilderConfig
from fast_lora.utils import Assert
from tests.utils.utils import ToyModel, randomize_lora


def _get_adapters(train_bias: bool = False):
    builder = LoRABuilder(
        LoRABuilderConfig.from_dict(
            {"default": {"rank": 4, "alpha": 8.0, "train_bias": train_bias}, "layer_kinds": ["linear", "embedding"]}
        )
    )
    adapters = builder.apply(ToyModel())
    for adapter in adapters.values():
        randomize_lora(adapter)
    return adapters


def test_extract_tensors():
    adapters = _get_adapters()
    tensors = extract_tensors(adapters)
    Assert.eq(list(tensors), [f"{name}.lora_{factor}" for name in sorted(adapters) for factor in "AB"])
    for name, adapter in adapters.items():
        Assert.all_equal(tensors[f"{name}.lora_A"], adapter.delta.lora_A)
        Assert.all_equal(tensors[f"{name}.lora_B"], adapter.delta.lora_B)
    # The frozen weights are not included.
    Assert.custom(lambda: not any(key.endswith(".weight") for key in tensors))

    tensors = extract_tensors(adapters, prefix="lora")
    Assert.incl("lora.layers.0.q_proj.lora_A", tensors)
    Assert.incl("lora.embed_tokens.lora_B", tensors)


def test_extract_inject():
    adapters = _get_adapters(train_bias=True)
    tensors = extract_tensors(adapters, prefix="model")
    Assert.incl("model.lm_head.lora_A", tensors)
    Assert.incl("model.layers.1.q_proj.bias", tensors)

    new_adapters = _get_adapters(train_bias=True)
    inject_tensors(tensors, new_adapters, prefix="model")
    for name, adapter in new_adapters.items():
        for tensor_name, tensor in adapter.extract().items():
            Assert.all_equal(tensor, adapters[name].extract()[tensor_name])


def test_inject_missing_key():
    adapters = _get_adapters()
    tensors = extract_tensors(adapters)
    del tensors["lm_head.lora_A"]
    new_adapters = _get_adapters()
    with pytest.raises(MissingKeyError, match="lm_head.lora_A"):
        inject_tensors(tensors, new_adapters)
    # Adapters are processed in order, without rollback.
    Assert.all_equal(new_adapters["layers.0.q_proj"].delta.lora_B, adapters["layers.0.q_proj"].delta.lora_B)
    Assert.custom(torch.any, new_adapters["lm_head"].delta.lora_B != adapters["lm_head"].delta.lora_B)


def test_inject_shape_mismatch():
    adapters = _get_adapters()
    tensors = extract_tensors(adapters)
    tensors["layers.0.q_proj.lora_A"] = torch.zeros(2, 16)
    with pytest.raises(ShapeMismatchError):
        inject_tensors(tensors, _get_adapters())


def test_inject_merged():
    adapters = _get_adapters()
    tensors = extract_tensors(adapters)
    new_adapters = _get_adapters()
    new_adapters["layers.0.mlp.0"].merge()
    with pytest.raises(AlreadyMergedError):
        inject_tensors(tensors, new_adapters)


def test_save_load_adapters(tmp_path):
    adapters = _get_adapters()
    path = tmp_path / "adapters" / "lora.safetensors"
    save_adapters(adapters, path, prefix="lora", metadata={"step": 10, "tags": ["test"]})

    Assert.eq(set(safetensors.torch.load_file(path)), set(extract_tensors(adapters, prefix="lora")))
    metadata = read_adapter_metadata(path)
    Assert.eq(metadata["step"], 10)
    Assert.eq(metadata["tags"], ["test"])
    Assert.eq(metadata["prefix"], "lora")
    Assert.eq(metadata["fast_lora_version"], fast_lora.__version__)
    Assert.eq(metadata["adapters"]["embed_tokens"], {"kind": "embedding", "rank": 4, "alpha": 8.0})

    new_adapters = _get_adapters()
    load_adapters(path, new_adapters, prefix="lora")
    for name, adapter in new_adapters.items():
        Assert.all_equal(adapter.delta.lora_A, adapters[name].delta.lora_A)
        Assert.all_equal(adapter.delta.lora_B, adapters[name].delta.lora_B)


def test_load_adapters_wrong_prefix(tmp_path):
    path = tmp_path / "lora.safetensors"
    save_adapters(_get_adapters(), path, prefix="lora")
    with pytest.raises(MissingKeyError):
        load_adapters(path, _get_adapters(), prefix="other")


def test_load_adapters_invalid_file(tmp_path):
    with pytest.raises(InvalidAdapterFileError):
        load_adapters(tmp_path / "missing.safetensors", _get_adapters())
    path = tmp_path / "invalid.safetensors"
    path.write_bytes(b"definitely not a safetensors file")
    with pytest.raises(InvalidAdapterFileError):
        load_adapters(path, _get_adapters())
    with pytest.raises(InvalidAdapterFileError):
        read_adapter_metadata(path)


def test_safetensors_metadata():
    metadata = {"format": "pt", "rank": 4, "alpha": 8.0, "typed": True, "targets": ["q_proj", "v_proj"], "path": None}
    exported = export_safetensors_metadata(metadata)
    Assert.eq(exported["format"], "pt")
    Assert.eq(exported["rank"], "4")
    Assert.custom(all, (isinstance(value, str) for value in exported.values()))
    Assert.eq(import_safetensors_metadata(exported), metadata)
