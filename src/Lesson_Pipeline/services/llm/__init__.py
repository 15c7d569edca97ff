"""Language-model access: admission control, transport and error taxonomy."""

from .admission import AdmissionController, AdmissionStats
from .errors import ErrorClassifier, ErrorInfo, ErrorKind, classify_exception
from .providers import ChatCompletion, ChatMessage, ProviderProfile, get_profile
from .transport import LLMTransport, ResponseValidationError

__all__ = [
    "AdmissionController",
    "AdmissionStats",
    "ChatCompletion",
    "ChatMessage",
    "ErrorClassifier",
    "ErrorInfo",
    "ErrorKind",
    "LLMTransport",
    "ProviderProfile",
    "ResponseValidationError",
    "classify_exception",
    "get_profile",
]
