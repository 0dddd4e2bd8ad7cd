from __future__ import annotations

from dataclasses import dataclass, field


class ValidationError(ValueError):
    """Malformed input. Raised before any state is touched."""


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    """The target entity is not in a valid source state for the operation."""


class ExternalServiceError(RuntimeError):
    """Extraction, storage or rendering failed. Callers record it on the entity first."""


@dataclass(frozen=True)
class IntegrityWarning:
    code: str
    message: str
    details: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {'code': self.code, 'message': self.message, 'details': dict(self.details)}
