from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """How the emission pipeline reacts to a failure."""

    VALIDATION = "validation"  # surfaced before submission, never retried
    PERMANENT = "permanent"  # invoice goes to ERROR, never retried
    TEMPORARY = "temporary"  # re-raised so the queue retries with backoff


class EmissionError(Exception):
    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, cause: object | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause


class ValidationError(EmissionError):
    """One or more fields are missing or invalid. Carries every message, not just the first."""

    def __init__(self, errors: list[str] | str) -> None:
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("; ".join(self.errors))


class TaxRuleNotFoundError(ValidationError):
    def __init__(self, kind: str, nature_id: int | None, uf: str) -> None:
        super().__init__(
            f"Regra {kind.upper()} não encontrada para a natureza de operação "
            f"{nature_id} e UF de destino {uf or '(vazia)'}."
        )
        self.tax_kind = kind
        self.nature_id = nature_id
        self.uf = uf


class InvalidCfopError(ValidationError):
    def __init__(self, raw: object) -> None:
        super().__init__(
            f'CFOP inválido ou não configurado: "{raw}". '
            "Configure o CFOP na natureza de operação ou no produto."
        )
        self.raw = raw


class MissingRateError(ValidationError):
    """Official rate table has no entry for a state (DIFAL is never approximated)."""


class MissingCredentialError(EmissionError):
    kind = ErrorKind.PERMANENT


class InvalidTransitionError(EmissionError):
    def __init__(self, current: object, target: object) -> None:
        super().__init__(f"Transição de status inválida: {current} → {target}")
        self.current = current
        self.target = target


class GatewayError(EmissionError):
    kind = ErrorKind.PERMANENT

    def __init__(
        self, message: str, status_code: int = 0, response: dict | None = None
    ) -> None:
        super().__init__(message, cause=response)
        self.status_code = status_code
        self.response = response or {}


class GatewayPermanentError(GatewayError):
    """Schema rejection or authentication failure. Retrying cannot help."""

    kind = ErrorKind.PERMANENT


class GatewayTemporaryError(GatewayError):
    """Timeout, network failure, rate limiting or server error."""

    kind = ErrorKind.TEMPORARY


class CallbackAuthError(EmissionError):
    """Push callback without a valid shared secret, or no secret configured."""

    kind = ErrorKind.PERMANENT
