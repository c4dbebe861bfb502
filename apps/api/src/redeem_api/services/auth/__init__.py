from .sessions import UserSessionStore, hash_session_token  # noqa: F401
