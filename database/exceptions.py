"""Database exception types."""

class DatabaseError(Exception):
    """Raised when a store operation fails for infrastructure reasons."""
    pass

class DatabaseSchemaError(DatabaseError):
    """Raised when schema loading or migration fails."""
    pass

class TransactionConflictError(DatabaseError):
    """Raised when the store aborts a transaction on deadlock or serialization failure."""
    pass

class InvalidReferenceError(DatabaseError):
    """Raised when a write references a row that does not exist."""
    pass
