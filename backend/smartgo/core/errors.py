"""
Error taxonomy for itinerary generation and synchronization.

Generation and persistence failures propagate as these typed errors up to the
API layer (or the chat orchestrator), which reports the message verbatim.
Instruction-parser problems are never raised; they are warnings on the
parsed intent.
"""

from typing import Any, Dict, List, Optional


class ItineraryError(Exception):
    """Base class for all domain errors surfaced to API callers"""

    status_code: int = 500
    error_type: str = "itinerary_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "error_type": self.error_type}


class ProviderConfigError(ItineraryError):
    """The generative provider cannot be called at all (e.g. missing API key)"""

    status_code = 500
    error_type = "provider_config"


class ProviderUnavailableError(ItineraryError):
    """Every candidate model was not found or not supported"""

    status_code = 502
    error_type = "provider_unavailable"

    def __init__(self, models: List[str], diagnostics: Optional[List[str]] = None):
        self.models = list(models)
        self.diagnostics = list(diagnostics or [])
        message = (
            f"No working Gemini model. Tried: {', '.join(self.models)}. "
            "Set GEMINI_MODEL to a currently supported model."
        )
        if self.diagnostics:
            message += f" Errors: {' | '.join(self.diagnostics)}"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["models"] = self.models
        return payload


class ProviderBusyError(ItineraryError):
    """Rate-limit / overload signals outlasted the retry schedule on every model"""

    status_code = 503
    error_type = "provider_busy"

    def __init__(self, models: List[str], diagnostics: Optional[List[str]] = None):
        self.models = list(models)
        self.diagnostics = list(diagnostics or [])
        super().__init__(
            f"Gemini provider is busy, please retry later. Tried: {', '.join(self.models)}."
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["models"] = self.models
        payload["retryable"] = True
        return payload


class SchemaInvalidError(ItineraryError):
    """Provider output failed structural validation or trip cross-validation"""

    status_code = 502
    error_type = "schema_invalid"

    def __init__(self, issues: List[Dict[str, str]], summary: str = "Generated itinerary failed validation"):
        self.issues = list(issues)
        details = "; ".join(f"{i['path']}: {i['message']}" for i in self.issues[:5])
        super().__init__(f"{summary}: {details}" if details else summary)

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["issues"] = self.issues
        return payload


class ConstraintViolationError(ItineraryError):
    """A request references rows outside the target scope; nothing was changed"""

    status_code = 400
    error_type = "constraint_violation"


class NotFoundError(ItineraryError):
    status_code = 404
    error_type = "not_found"


class PersistenceError(ItineraryError):
    """A transactional write failed and was rolled back"""

    status_code = 500
    error_type = "persistence_failure"


class OrchestratorStateError(ItineraryError):
    """The chat orchestrator is busy or the pending intent is not applicable"""

    status_code = 409
    error_type = "invalid_state"
