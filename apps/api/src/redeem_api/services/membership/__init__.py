from .store import SqlMembershipStore  # noqa: F401
