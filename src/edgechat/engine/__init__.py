from .base import CleanUpListener, EngineHandle, ErrorListener, GenerationEngine, ResultListener
from .ollama import OllamaEngine

__all__ = [
    "CleanUpListener",
    "EngineHandle",
    "ErrorListener",
    "GenerationEngine",
    "OllamaEngine",
    "ResultListener",
]
