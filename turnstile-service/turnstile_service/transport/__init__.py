from .client import InferenceClient, kind_for_status

__all__ = ["InferenceClient", "kind_for_status"]
