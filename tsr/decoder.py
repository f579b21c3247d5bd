"""Volume decoders mapping triplane features to density and colour features."""

from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol, Union, runtime_checkable

import torch
import torch.nn as nn

from tsr.errors import ConfigurationError

logger = logging.getLogger(__name__)

HIDDEN_ACTIVATIONS = {
    "silu": nn.SiLU,
    "relu": nn.ReLU,
    "softplus": nn.Softplus,
}


@runtime_checkable
class VolumeDecoder(Protocol):
    """Anything that maps Nx F features to density and colour features.

    Implementations must be pure and batchable: decoding a batch in pieces
    gives the same result as decoding it at once.
    """

    def __call__(self, features: torch.Tensor) -> Dict[str, torch.Tensor]:
        ...


class NeRFMLP(nn.Module):
    """Fully connected decoder with the TripoSR layout.

    ``n_hidden_layers`` blocks of Linear + activation with ``n_neurons`` units,
    followed by a Linear layer producing 4 outputs: raw density (1) and raw
    colour features (3). Linear modules live at ``layers.{2k}``.
    """

    def __init__(
        self,
        in_channels: int = 120,
        n_neurons: int = 64,
        n_hidden_layers: int = 9,
        activation: str = "silu",
        bias: bool = True,
        weight_init: Optional[str] = "kaiming_uniform",
        bias_init: Optional[str] = None,
    ):
        super().__init__()
        if n_hidden_layers < 1:
            raise ConfigurationError(f"n_hidden_layers must be >= 1, got {n_hidden_layers}")
        if activation not in HIDDEN_ACTIVATIONS:
            raise ConfigurationError(
                f"Unsupported decoder activation '{activation}', "
                f"expected one of {sorted(HIDDEN_ACTIVATIONS)}"
            )

        self.in_channels = in_channels
        self.n_neurons = n_neurons
        self.n_hidden_layers = n_hidden_layers
        self.activation = activation

        # Input layer, hidden layers, then 4 outputs
        layers = [self._make_linear(in_channels, n_neurons, bias, weight_init, bias_init)]
        layers.append(HIDDEN_ACTIVATIONS[activation]())
        for _ in range(n_hidden_layers - 1):
            layers.append(self._make_linear(n_neurons, n_neurons, bias, weight_init, bias_init))
            layers.append(HIDDEN_ACTIVATIONS[activation]())
        layers.append(self._make_linear(n_neurons, 4, bias, weight_init, bias_init))
        self.layers = nn.Sequential(*layers)

    @staticmethod
    def _make_linear(
        dim_in: int,
        dim_out: int,
        bias: bool,
        weight_init: Optional[str],
        bias_init: Optional[str],
    ) -> nn.Linear:
        layer = nn.Linear(dim_in, dim_out, bias=bias)

        # Initialise weights and biases
        if weight_init is None:
            pass
        elif weight_init == "kaiming_uniform":
            nn.init.kaiming_uniform_(layer.weight, nonlinearity="relu")
        else:
            raise ConfigurationError(f"Unsupported weight_init '{weight_init}'")

        if bias:
            if bias_init is None:
                pass
            elif bias_init == "zero":
                nn.init.zeros_(layer.bias)
            else:
                raise ConfigurationError(f"Unsupported bias_init '{bias_init}'")

        return layer

    @classmethod
    def from_config(cls, config: Dict) -> "NeRFMLP":
        """Build a decoder from the ``decoder`` config section."""
        return cls(
            in_channels=config.get("in_channels", 120),
            n_neurons=config.get("n_neurons", 64),
            n_hidden_layers=config.get("n_hidden_layers", 9),
            activation=config.get("activation", "silu"),
            bias=config.get("bias", True),
            weight_init=config.get("weight_init", "kaiming_uniform"),
            bias_init=config.get("bias_init"),
        )

    @classmethod
    def from_checkpoint(
        cls,
        path: str,
        config: Optional[Dict] = None,
        device: Union[str, torch.device] = "cpu",
    ) -> "NeRFMLP":
        """Load decoder weights from a ``state_dict`` file.

        Args:
            path: Path to a ``.pt`` file holding the state dict
            config: Decoder config section (layout must match the weights)
            device: Device to load the weights on

        Returns:
            Decoder in eval mode
        """
        decoder = cls.from_config(config or {})
        # Layout must match the config
        state_dict = torch.load(path, map_location=device)
        decoder.load_state_dict(state_dict)
        decoder.to(device)
        decoder.eval()
        logger.info(
            f"Loaded decoder weights from {path} "
            f"({sum(p.numel() for p in decoder.parameters())} parameters)"
        )
        return decoder

    def forward(self, features: torch.Tensor) -> Dict[str, torch.Tensor]:
        inp_shape = features.shape[:-1]
        features = features.reshape(-1, features.shape[-1])

        out = self.layers(features)

        # Split raw density and colour features
        out = out.reshape(*inp_shape, -1)

        return {"density": out[..., 0:1], "features": out[..., 1:4]}
