from .logits_provider import LogitsProvider
from .reporter import Reporter
from .tensor_selector import TensorSelector

__all__ = [
    "LogitsProvider",
    "Reporter",
    "TensorSelector",
]
