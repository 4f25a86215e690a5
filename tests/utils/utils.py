import pytest
import torch

from fast_lora.layers.lora.adapter import LoRAAdapter
from fast_lora.layers.lora.config import LayerKind

requires_cuda = pytest.mark.skipif(not torch.cuda.is_available(), reason="CUDA is not available")


def get_test_layer(kind: LayerKind, device: str = "cpu", dtype: torch.dtype = torch.float32) -> torch.nn.Module:
    # Small layers with non-trivial geometry, so layout errors don't cancel out.
    if kind == LayerKind.linear:
        layer = torch.nn.Linear(16, 12)
    elif kind == LayerKind.conv1d:
        layer = torch.nn.Conv1d(4, 6, kernel_size=3, stride=2, padding=1)
    elif kind == LayerKind.conv2d:
        layer = torch.nn.Conv2d(3, 5, kernel_size=(3, 2), padding=1, dilation=2)
    elif kind == LayerKind.embedding:
        layer = torch.nn.Embedding(20, 8, padding_idx=0)
    else:
        raise NotImplementedError(kind)
    return layer.to(device=device, dtype=dtype)


def get_test_input(kind: LayerKind, device: str = "cpu", dtype: torch.dtype = torch.float32) -> torch.Tensor:
    if kind == LayerKind.linear:
        return torch.randn(3, 5, 16, device=device, dtype=dtype)
    elif kind == LayerKind.conv1d:
        return torch.randn(2, 4, 15, device=device, dtype=dtype)
    elif kind == LayerKind.conv2d:
        return torch.randn(2, 3, 9, 8, device=device, dtype=dtype)
    elif kind == LayerKind.embedding:
        return torch.randint(0, 20, (3, 7), device=device)
    else:
        raise NotImplementedError(kind)


@torch.no_grad()
def randomize_lora(adapter: LoRAAdapter) -> None:
    # `lora_B` starts at zero, which hides most of the delta computation.
    adapter.delta.lora_B.normal_()


class ToyBlock(torch.nn.Module):
    def __init__(self, hidden_size: int):
        super().__init__()
        self.q_proj = torch.nn.Linear(hidden_size, hidden_size)
        self.mlp = torch.nn.Sequential(
            torch.nn.Linear(hidden_size, 2 * hidden_size),
            torch.nn.GELU(),
            torch.nn.Linear(2 * hidden_size, hidden_size),
        )

    def forward(self, hidden: torch.Tensor) -> torch.Tensor:
        return hidden + self.q_proj(hidden) + self.mlp(hidden)


class ToyModel(torch.nn.Module):
    def __init__(self, vocab_size: int = 32, hidden_size: int = 16, num_layers: int = 2):
        super().__init__()
        self.embed_tokens = torch.nn.Embedding(vocab_size, hidden_size)
        self.conv = torch.nn.Conv1d(hidden_size, hidden_size, kernel_size=3, padding=1)
        self.layers = torch.nn.ModuleList([ToyBlock(hidden_size) for _ in range(num_layers)])
        self.norm = torch.nn.LayerNorm(hidden_size)
        self.lm_head = torch.nn.Linear(hidden_size, vocab_size, bias=False)

    def forward(self, input_ids: torch.Tensor) -> torch.Tensor:
        hidden = self.embed_tokens(input_ids)
        hidden = self.conv(hidden.transpose(1, 2)).transpose(1, 2)
        for layer in self.layers:
            hidden = layer(hidden)
        return self.lm_head(self.norm(hidden))
