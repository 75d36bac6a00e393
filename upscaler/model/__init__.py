# Servable model architectures and the catalog table
from upscaler.model.architectures import ESRGANNet, ResidualBlock, RestorationNet

__all__ = [
    "ESRGANNet",
    "ResidualBlock",
    "RestorationNet",
]
