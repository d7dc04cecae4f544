from __future__ import annotations

import torch
import torch.nn as nn


class AcousticEncoder(nn.Module):
    """Strided conv front-end followed by a bidirectional LSTM stack.

    Input: features [B, T, F]. Output: encoder states [B, T', H] with T' = ceil(T / 2).
    """

    def __init__(self, num_features: int, hidden: int = 256, num_layers: int = 3, dropout: float = 0.1):
        super().__init__()
        self.num_features = num_features
        self.hidden = hidden
        self.num_layers = num_layers
        self.conv = nn.Sequential(
            nn.Conv1d(num_features, hidden, kernel_size=3, stride=2, padding=1),
            nn.GELU(),
        )
        self.rnn = nn.LSTM(
            input_size=hidden,
            hidden_size=hidden // 2,
            num_layers=num_layers,
            batch_first=True,
            bidirectional=True,
            dropout=dropout if num_layers > 1 else 0.0,
        )
        self.proj = nn.Linear(2 * (hidden // 2), hidden)

    def forward(self, inputs: torch.Tensor) -> torch.Tensor:
        x = self.conv(inputs.transpose(1, 2)).transpose(1, 2)
        x, _ = self.rnn(x)
        return self.proj(x)

    def pretty_string(self) -> str:
        return f"AcousticEncoder(features={self.num_features}, hidden={self.hidden}, layers={self.num_layers})"


def build_acoustic_model(config) -> AcousticEncoder:
    return AcousticEncoder(
        num_features=int(config.num_features),
        hidden=int(config.encoder_hidden),
        num_layers=int(config.encoder_layers),
    )


def num_total_params(module: nn.Module) -> int:
    return sum(int(p.numel()) for p in module.parameters())
