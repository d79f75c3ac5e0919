from .default import DefaultTensorSelector

__all__ = ["DefaultTensorSelector"]
