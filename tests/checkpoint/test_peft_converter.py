import json
import logging

import pytest
import safetensors.torch
import torch

from fast_lora.config import ValidationError
from fast_lora.engine.checkpoint.peft.config import PeftAdapterConfig, PeftConversionConfig
from fast_lora.engine.checkpoint.peft.converter import (
    PeftConverter,
    convert_peft_dir_to_lora,
    convert_peft_dir_to_lora_typed,
    convert_peft_to_lora,
    convert_peft_to_lora_typed,
)
from fast_lora.engine.checkpoint.peft.roles import LayerRole, RoleRule, RoleTable
from fast_lora.engine.checkpoint.state_dict import load_adapters, read_adapter_metadata
from fast_lora.errors import InvalidAdapterFileError, MissingKeyError, ShapeMismatchError, UnknownLayerShapeError
from fast_lora.layers.lora.builder import LoRABuilder
from fast_lora.layers.lora.config import LoRABuilderConfig
from fast_lora.utils import Assert

_PREFIX = "base_model.model."


def _get_peft_tensors(rank: int = 4) -> dict[str, torch.Tensor]:
    return {
        f"{_PREFIX}model.layers.0.self_attn.q_proj.lora_A.weight": torch.randn(rank, 16),
        f"{_PREFIX}model.layers.0.self_attn.q_proj.lora_B.weight": torch.randn(16, rank),
        f"{_PREFIX}model.layers.0.mlp.down_proj.lora_A.weight": torch.randn(rank, 32),
        f"{_PREFIX}model.layers.0.mlp.down_proj.lora_B.weight": torch.randn(16, rank),
        f"{_PREFIX}model.layers.0.router.lora_A.weight": torch.randn(rank, 16),
        f"{_PREFIX}model.layers.0.router.lora_B.weight": torch.randn(8, rank),
    }


def _write_peft_directory(path, tensors, config: dict | None = None, file_name="adapter_model.safetensors"):
    path.mkdir(parents=True, exist_ok=True)
    if file_name.endswith(".bin"):
        torch.save(tensors, path / file_name)
    else:
        safetensors.torch.save_file(tensors, path / file_name)
    if config is not None:
        (path / "adapter_config.json").write_text(json.dumps(config))
    return path


@pytest.mark.parametrize(
    ("path", "role"),
    (
        ("model.embed_tokens", LayerRole.embedding),
        ("lm_head", LayerRole.embedding),
        ("transformer.wte", LayerRole.embedding),
        ("model.layers.3.self_attn.q_proj", LayerRole.attention),
        ("model.layers.3.self_attn.o_proj", LayerRole.attention),
        ("transformer.h.0.attn.c_attn", LayerRole.attention),
        ("transformer.h.0.attn.c_proj", LayerRole.attention),
        ("bert.encoder.layer.0.attention.self.query", LayerRole.attention),
        ("model.layers.3.mlp.gate_proj", LayerRole.feed_forward),
        ("transformer.h.0.mlp.c_proj", LayerRole.feed_forward),
        ("model.layers.3.block_sparse_moe.experts.0.w1", LayerRole.feed_forward),
        ("encoder.layers.1.fc2", LayerRole.feed_forward),
        ("model.layers.3.self_attn.rotary_emb", LayerRole.unclassified),
        ("model.layers.0.router", LayerRole.unclassified),
        ("classifier", LayerRole.unclassified),
    ),
)
def test_classify(path, role):
    Assert.is_(RoleTable().classify(path), role)


def test_role_table_extension():
    table = RoleTable().with_rules(RoleRule(role=LayerRole.feed_forward, markers=["router"]))
    Assert.is_(table.classify("model.layers.0.router"), LayerRole.feed_forward)
    Assert.is_(table.classify("model.layers.0.self_attn.q_proj"), LayerRole.attention)
    Assert.eq(len(table.rules), len(RoleTable().rules) + 1)


def test_role_table_prefix():
    table = RoleTable.from_dict(
        {"role_tags": {"embedding": "", "attention": "attn", "feed_forward": "ffn", "unclassified": "other"}}
    )
    Assert.eq(table.get_prefix(LayerRole.embedding, "llama"), "lora_llama")
    Assert.eq(table.get_prefix(LayerRole.attention, "llama"), "lora_llama_attn")
    Assert.eq(table.get_prefix(LayerRole.unclassified, "mistral"), "lora_mistral_other")


def test_role_table_invalid():
    with pytest.raises(ValidationError):
        RoleRule(role=LayerRole.attention)
    with pytest.raises(ValidationError):
        RoleTable.from_dict({"role_tags": {"embedding": ""}})


def test_convert_typed():
    tensors = _get_peft_tensors()
    converted = PeftConverter(PeftConversionConfig(typed=True)).convert_tensors(tensors)
    Assert.eq(
        set(converted),
        {
            "lora_llama_csa.model.layers.0.self_attn.q_proj.lora_A",
            "lora_llama_csa.model.layers.0.self_attn.q_proj.lora_B",
            "lora_llama_block.model.layers.0.mlp.down_proj.lora_A",
            "lora_llama_block.model.layers.0.mlp.down_proj.lora_B",
            "lora_llama_generic.model.layers.0.router.lora_A",
            "lora_llama_generic.model.layers.0.router.lora_B",
        },
    )
    Assert.all_equal(
        converted["lora_llama_block.model.layers.0.mlp.down_proj.lora_A"],
        tensors[f"{_PREFIX}model.layers.0.mlp.down_proj.lora_A.weight"],
    )


def test_convert_untyped():
    converted = PeftConverter(PeftConversionConfig(prefix="lora_model")).convert_tensors(_get_peft_tensors())
    Assert.eq(
        sorted(converted),
        [
            "lora_model.model.layers.0.mlp.down_proj.lora_A",
            "lora_model.model.layers.0.mlp.down_proj.lora_B",
            "lora_model.model.layers.0.router.lora_A",
            "lora_model.model.layers.0.router.lora_B",
            "lora_model.model.layers.0.self_attn.q_proj.lora_A",
            "lora_model.model.layers.0.self_attn.q_proj.lora_B",
        ],
    )


def test_convert_without_stripping_prefix():
    converted = PeftConverter(PeftConversionConfig(strip_prefix="")).convert_tensors(_get_peft_tensors())
    Assert.incl(f"lora.{_PREFIX}model.layers.0.router.lora_A", converted)


def test_convert_peft_key_variants():
    converter = PeftConverter(PeftConversionConfig(prefix="lora"))
    converted = converter.convert_tensors(
        {
            "model.layers.0.self_attn.v_proj.lora_A.default.weight": torch.randn(2, 8),
            "model.layers.0.self_attn.v_proj.lora_B.default.weight": torch.randn(8, 2),
            "model.embed_tokens.lora_embedding_A": torch.randn(2, 10),
            "model.embed_tokens.lora_embedding_B": torch.randn(8, 2),
        }
    )
    Assert.eq(
        set(converted),
        {
            "lora.model.layers.0.self_attn.v_proj.lora_A",
            "lora.model.layers.0.self_attn.v_proj.lora_B",
            "lora.model.embed_tokens.lora_A",
            "lora.model.embed_tokens.lora_B",
        },
    )
    Assert.eq(converted["lora.model.embed_tokens.lora_A"].shape, (2, 10))


def test_convert_skips_other_keys(caplog):
    tensors = _get_peft_tensors()
    tensors[f"{_PREFIX}model.norm.weight"] = torch.ones(16)
    with caplog.at_level(logging.WARNING):
        converted = PeftConverter(PeftConversionConfig()).convert_tensors(tensors)
    Assert.eq(len(converted), 6)
    Assert.incl("model.norm.weight", caplog.text)


def test_convert_missing_partner():
    tensors = _get_peft_tensors()
    del tensors[f"{_PREFIX}model.layers.0.router.lora_B.weight"]
    with pytest.raises(MissingKeyError, match="lora_B"):
        PeftConverter(PeftConversionConfig()).convert_tensors(tensors)


def test_convert_transposed():
    lora_a, lora_b = torch.randn(16, 4), torch.randn(4, 12)
    converted = PeftConverter(PeftConversionConfig()).convert_tensors(
        {"fc.lora_A.weight": lora_a, "fc.lora_B.weight": lora_b}
    )
    Assert.all_equal(converted["lora.fc.lora_A"], lora_a.T)
    Assert.all_equal(converted["lora.fc.lora_B"], lora_b.T)


def test_convert_square_factors():
    # Both layouts are possible, the rank from the adapter config tells them apart.
    lora_a, lora_b = torch.randn(4, 8), torch.randn(8, 4)
    converter = PeftConverter(PeftConversionConfig())
    tensors = {"fc.lora_A.weight": lora_a, "fc.lora_B.weight": lora_b}
    converted = converter.convert_tensors(tensors)
    Assert.all_equal(converted["lora.fc.lora_A"], lora_a)
    converted = converter.convert_tensors(tensors, PeftAdapterConfig(r=8))
    Assert.all_equal(converted["lora.fc.lora_A"], lora_a.T)
    Assert.all_equal(converted["lora.fc.lora_B"], lora_b.T)


def test_convert_square_factors_module_rank():
    # A module rank different from the configured one, ex. from a PEFT `rank_pattern`.
    lora_a, lora_b = torch.randn(16, 64), torch.randn(64, 16)
    converted = PeftConverter(PeftConversionConfig()).convert_tensors(
        {"q_proj.lora_A.weight": lora_a, "q_proj.lora_B.weight": lora_b}, PeftAdapterConfig(r=8)
    )
    Assert.all_equal(converted["lora.q_proj.lora_A"], lora_a)
    Assert.all_equal(converted["lora.q_proj.lora_B"], lora_b)


@pytest.mark.parametrize(
    ("shape_a", "shape_b", "expected_b"),
    (
        ((4, 3, 3, 3), (8, 4, 1, 1), (8, 4)),
        ((4, 3, 5), (8, 4, 1), (8, 4)),
    ),
)
def test_convert_conv(shape_a, shape_b, expected_b):
    lora_a, lora_b = torch.randn(shape_a), torch.randn(shape_b)
    converted = PeftConverter(PeftConversionConfig()).convert_tensors(
        {"conv.lora_A.weight": lora_a, "conv.lora_B.weight": lora_b}
    )
    Assert.all_equal(converted["lora.conv.lora_A"], lora_a)
    Assert.eq(converted["lora.conv.lora_B"].shape, expected_b)
    Assert.all_equal(converted["lora.conv.lora_B"], lora_b.reshape(expected_b))


@pytest.mark.parametrize(
    ("shape_a", "shape_b", "error"),
    (
        ((4,), (8, 4), UnknownLayerShapeError),
        ((4, 3, 3, 3, 3), (8, 4, 1, 1, 1), UnknownLayerShapeError),
        ((4, 3, 3), (8, 4, 1, 1), UnknownLayerShapeError),
        ((4, 16), (8, 3), ShapeMismatchError),
        ((4, 3, 3, 3), (8, 4, 3, 3), ShapeMismatchError),
    ),
)
def test_convert_invalid_shape(shape_a, shape_b, error):
    with pytest.raises(error):
        PeftConverter(PeftConversionConfig()).convert_tensors(
            {"fc.lora_A.weight": torch.randn(shape_a), "fc.lora_B.weight": torch.randn(shape_b)}
        )


def test_convert_dummy_embeddings():
    converter = PeftConverter(PeftConversionConfig(typed=True, add_dummy_embeddings=True))
    converted = converter.convert_tensors(_get_peft_tensors())
    Assert.eq(converted["lora_llama.model.embed_tokens.lora_A"].shape, (4, 32000))
    Assert.eq(converted["lora_llama.model.embed_tokens.lora_B"].shape, (2048, 4))
    Assert.custom(lambda: not converted["lora_llama.model.embed_tokens.lora_A"].any())

    # The rank is taken from the adapter config.
    converted = converter.convert_tensors(_get_peft_tensors(rank=8), PeftAdapterConfig(r=8))
    Assert.eq(converted["lora_llama.model.embed_tokens.lora_A"].shape, (8, 32000))


def test_convert_no_dummy_with_embeddings():
    tensors = _get_peft_tensors()
    tensors[f"{_PREFIX}model.embed_tokens.lora_embedding_A"] = torch.randn(4, 32)
    tensors[f"{_PREFIX}model.embed_tokens.lora_embedding_B"] = torch.randn(16, 4)
    converted = PeftConverter(PeftConversionConfig(typed=True, add_dummy_embeddings=True)).convert_tensors(tensors)
    Assert.eq(converted["lora_llama.model.embed_tokens.lora_A"].shape, (4, 32))
    Assert.eq(len(converted), 8)


def test_convert_dummy_embeddings_data_type():
    tensors = {f"{_PREFIX}model.norm.weight": torch.ones(16, dtype=torch.float32)}
    tensors.update({key: tensor.to(torch.float16) for key, tensor in _get_peft_tensors().items()})
    converted = PeftConverter(PeftConversionConfig(typed=True, add_dummy_embeddings=True)).convert_tensors(tensors)
    # The skipped tensor doesn't count.
    Assert.eq(converted["lora_llama.model.embed_tokens.lora_A"].dtype, torch.float16)
    Assert.eq(converted["lora_llama.model.embed_tokens.lora_B"].dtype, torch.float16)


def test_convert_dummy_embeddings_existing_path():
    # Without an embedding rule, the embedding adapter shares the untyped prefix with the dummy one.
    config = PeftConversionConfig.from_dict(
        {"add_dummy_embeddings": True, "roles": {"rules": [{"role": "attention", "markers": ["q_proj"]}]}}
    )
    tensors = {
        "model.embed_tokens.lora_A.weight": torch.randn(4, 32),
        "model.embed_tokens.lora_B.weight": torch.randn(16, 4),
    }
    with pytest.raises(InvalidAdapterFileError, match="model.embed_tokens"):
        PeftConverter(config).convert_tensors(tensors)


def test_convert_indexed():
    tensors = _get_peft_tensors()
    tensors[f"{_PREFIX}model.layers.0.self_attn.v_proj.lora_A.weight"] = torch.randn(4, 16)
    tensors[f"{_PREFIX}model.layers.0.self_attn.v_proj.lora_B.weight"] = torch.randn(16, 4)
    converted = PeftConverter(
        PeftConversionConfig(typed=True, naming="indexed", add_dummy_embeddings=True)
    ).convert_tensors(tensors)
    Assert.eq(
        set(converted),
        {
            "lora_llama_csa.a0.weight",
            "lora_llama_csa.b0.weight",
            "lora_llama_csa.a1.weight",
            "lora_llama_csa.b1.weight",
            "lora_llama_block.a0.weight",
            "lora_llama_block.b0.weight",
            "lora_llama_generic.a0.weight",
            "lora_llama_generic.b0.weight",
            "lora_llama.a0.weight",
            "lora_llama.b0.weight",
        },
    )
    # Pairs are numbered in module path order.
    Assert.all_equal(
        converted["lora_llama_csa.a0.weight"], tensors[f"{_PREFIX}model.layers.0.self_attn.q_proj.lora_A.weight"]
    )
    Assert.all_equal(
        converted["lora_llama_csa.a1.weight"], tensors[f"{_PREFIX}model.layers.0.self_attn.v_proj.lora_A.weight"]
    )


def test_convert_data_type():
    converted = PeftConverter(PeftConversionConfig(data_type="bf16")).convert_tensors(_get_peft_tensors())
    Assert.custom(all, (tensor.dtype == torch.bfloat16 for tensor in converted.values()))


def test_convert_multiple_adapters():
    with pytest.raises(InvalidAdapterFileError):
        PeftConverter(PeftConversionConfig()).convert_tensors(
            {
                "fc.lora_A.first.weight": torch.randn(2, 8),
                "fc.lora_B.first.weight": torch.randn(8, 2),
                "fc.lora_A.second.weight": torch.randn(2, 8),
                "fc.lora_B.second.weight": torch.randn(8, 2),
            }
        )


def test_convert_file(tmp_path):
    tensors = _get_peft_tensors()
    safetensors.torch.save_file(tensors, tmp_path / "adapter.safetensors")
    convert_peft_to_lora(tmp_path / "adapter.safetensors", tmp_path / "out" / "lora.safetensors", "lora_model")
    converted = safetensors.torch.load_file(tmp_path / "out" / "lora.safetensors")
    Assert.eq(len(converted), 6)
    Assert.all_equal(
        converted["lora_model.model.layers.0.router.lora_B"], tensors[f"{_PREFIX}model.layers.0.router.lora_B.weight"]
    )
    metadata = read_adapter_metadata(tmp_path / "out" / "lora.safetensors")
    Assert.eq(metadata["prefix"], "lora_model")
    Assert.eq(metadata["typed"], False)
    Assert.eq(metadata["source_format"], "peft")

    convert_peft_to_lora_typed(tmp_path / "adapter.safetensors", tmp_path / "typed.safetensors", model_tag="mistral")
    Assert.incl(
        "lora_mistral_csa.model.layers.0.self_attn.q_proj.lora_A",
        safetensors.torch.load_file(tmp_path / "typed.safetensors"),
    )


def test_convert_directory(tmp_path):
    peft_directory = _write_peft_directory(
        tmp_path / "peft",
        _get_peft_tensors(),
        {
            "r": 4,
            "lora_alpha": 8,
            "lora_dropout": 0.05,
            "target_modules": ["q_proj", "down_proj", "router"],
            "peft_type": "LORA",
            "task_type": "CAUSAL_LM",
            "base_model_name_or_path": "some/model",
        },
    )
    output_path = tmp_path / "lora.safetensors"
    convert_peft_dir_to_lora_typed(peft_directory, output_path, add_dummy_embeddings=True)
    converted = safetensors.torch.load_file(output_path)
    Assert.eq(len(converted), 8)
    Assert.incl("lora_llama_csa.model.layers.0.self_attn.q_proj.lora_A", converted)
    metadata = read_adapter_metadata(output_path)
    Assert.eq(metadata["rank"], 4)
    Assert.eq(metadata["alpha"], 8.0)
    Assert.eq(metadata["model_tag"], "llama")
    Assert.eq(metadata["target_modules"], ["q_proj", "down_proj", "router"])
    Assert.eq(metadata["base_model_name_or_path"], "some/model")


def test_convert_directory_bin_without_config(tmp_path):
    peft_directory = _write_peft_directory(tmp_path / "peft", _get_peft_tensors(), file_name="adapter_model.bin")
    convert_peft_dir_to_lora(peft_directory, tmp_path / "lora.safetensors", "lora")
    Assert.eq(len(safetensors.torch.load_file(tmp_path / "lora.safetensors")), 6)
    Assert.not_incl("rank", read_adapter_metadata(tmp_path / "lora.safetensors"))


def test_convert_directory_file_priority(tmp_path):
    peft_directory = _write_peft_directory(tmp_path / "peft", _get_peft_tensors(), file_name="adapter.safetensors")
    _write_peft_directory(
        peft_directory,
        {"fc.lora_A.weight": torch.randn(2, 8), "fc.lora_B.weight": torch.randn(8, 2)},
        file_name="adapter_model.safetensors",
    )
    converted = convert_peft_dir_to_lora(peft_directory, tmp_path / "lora.safetensors", "lora")
    Assert.eq(set(converted), {"lora.fc.lora_A", "lora.fc.lora_B"})


@pytest.mark.parametrize(
    "config",
    (
        "{not json",
        json.dumps([1, 2]),
        json.dumps({"r": 0}),
        json.dumps({"r": 4, "peft_type": "PREFIX_TUNING"}),
    ),
)
def test_convert_directory_invalid_config(tmp_path, config):
    peft_directory = _write_peft_directory(tmp_path / "peft", _get_peft_tensors())
    (peft_directory / "adapter_config.json").write_text(config)
    with pytest.raises(InvalidAdapterFileError):
        convert_peft_dir_to_lora(peft_directory, tmp_path / "lora.safetensors", "lora")


def test_convert_directory_missing_weights(tmp_path):
    (tmp_path / "peft").mkdir()
    with pytest.raises(InvalidAdapterFileError):
        convert_peft_dir_to_lora(tmp_path / "peft", tmp_path / "lora.safetensors", "lora")
    with pytest.raises(InvalidAdapterFileError):
        convert_peft_dir_to_lora(tmp_path / "missing", tmp_path / "lora.safetensors", "lora")
    with pytest.raises(InvalidAdapterFileError):
        convert_peft_to_lora(tmp_path / "peft" / "adapter.safetensors", tmp_path / "lora.safetensors", "lora")


def test_convert_directory_unreadable_files(tmp_path):
    peft_directory = _write_peft_directory(tmp_path / "peft", _get_peft_tensors())
    (peft_directory / "adapter_config.json").write_bytes(b'{"r": 4, "base_model_name_or_path": "\xff\xfe"}')
    with pytest.raises(InvalidAdapterFileError):
        convert_peft_dir_to_lora(peft_directory, tmp_path / "lora.safetensors", "lora")

    (tmp_path / "empty").mkdir()
    (tmp_path / "empty" / "adapter_model.bin").write_bytes(b"")
    with pytest.raises(InvalidAdapterFileError):
        convert_peft_dir_to_lora(tmp_path / "empty", tmp_path / "lora.safetensors", "lora")


def test_adapter_config_single_target(tmp_path):
    (tmp_path / "adapter_config.json").write_text(json.dumps({"r": 16, "lora_alpha": 32, "target_modules": "q_proj"}))
    config = PeftAdapterConfig.from_directory(tmp_path)
    Assert.eq(config.target_modules, ["q_proj"])
    Assert.eq(config.scaling, 2.0)
    Assert.none(PeftAdapterConfig.from_directory(tmp_path / "missing"))


def test_convert_and_load(tmp_path):
    # A PEFT adapter converted with the model prefix loads directly into the matching adapters.
    layer = torch.nn.ModuleDict({"q_proj": torch.nn.Linear(16, 16)})
    model = torch.nn.ModuleDict({"model": torch.nn.ModuleDict({"layers": torch.nn.ModuleList([layer])})})
    peft_tensors = {
        f"{_PREFIX}model.layers.0.q_proj.lora_A.weight": torch.randn(4, 16),
        f"{_PREFIX}model.layers.0.q_proj.lora_B.weight": torch.randn(16, 4),
    }
    safetensors.torch.save_file(peft_tensors, tmp_path / "adapter_model.safetensors")
    convert_peft_to_lora(tmp_path / "adapter_model.safetensors", tmp_path / "lora.safetensors", "lora")

    adapters = LoRABuilder(
        LoRABuilderConfig.from_dict({"default": {"rank": 4}, "target_modules": ["q_proj"]})
    ).apply(model)
    load_adapters(tmp_path / "lora.safetensors", adapters, prefix="lora")
    adapter = adapters["model.layers.0.q_proj"]
    Assert.all_equal(adapter.delta.lora_A, peft_tensors[f"{_PREFIX}model.layers.0.q_proj.lora_A.weight"])
    Assert.all_equal(adapter.delta.lora_B, peft_tensors[f"{_PREFIX}model.layers.0.q_proj.lora_B.weight"])
