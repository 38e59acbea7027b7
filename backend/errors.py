"""Error taxonomy shared by the store, collaborators and the API layer."""


class SceneError(Exception):
    """Base scene error with status code and message."""
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class NotFoundError(SceneError):
    """Referenced map, actor or POI does not exist."""
    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, status_code=404)


class ValidationError(SceneError):
    """Malformed input, rejected before any mutation."""
    def __init__(self, message: str = "Invalid input"):
        super().__init__(message, status_code=422)


class PersistenceFailure(SceneError):
    """Writing the scene snapshot to durable storage failed."""
    def __init__(self, message: str = "Failed to save scene state"):
        super().__init__(message, status_code=500)
