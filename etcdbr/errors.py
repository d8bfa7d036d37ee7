"""Error categories raised by etcd and snapshot-store operations."""


class EtcdError(Exception):
    """An error that occurred while processing an etcd related operation."""

    def __init__(self, message: str, operation: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation

    def __str__(self) -> str:
        return self.message


class SnapstoreError(Exception):
    """An error that occurred while processing a snapshot-store related operation."""

    def __init__(self, message: str, operation: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation

    def __str__(self) -> str:
        return self.message