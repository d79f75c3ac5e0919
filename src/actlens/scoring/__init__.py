from .layer_importance import LayerImportanceScorer, parse_layer_key

__all__ = ["LayerImportanceScorer", "parse_layer_key"]
