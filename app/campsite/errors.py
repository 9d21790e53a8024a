"""
Error taxonomy shared by services and routes.

Services raise these; route handlers translate them into flash + redirect.
Anything else is left to the app-level 500 handler.
"""
from __future__ import annotations


class CampsiteError(Exception):
    pass


class ValidationError(CampsiteError):
    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class DuplicateHandle(ValidationError):
    def __init__(self, email: str):
        self.email = email
        super().__init__("A user with that email is already registered.")


class NotFoundError(CampsiteError):
    def __init__(self, entity_type: str, entity_id: object):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class AuthenticationError(CampsiteError):
    pass


class InvalidCredentials(AuthenticationError):
    def __init__(self) -> None:
        super().__init__("Invalid email or password.")


class AuthorizationError(CampsiteError):
    def __init__(self, entity_type: str, entity_id: object):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"Not permitted to modify {entity_type} {entity_id}")


class DependencyError(CampsiteError):
    """An external collaborator (asset store, geocoder) failed."""
