"""Exception types for parley."""


class ParleyError(Exception):
    """Base class for errors surfaced to parley callers."""

    pass


class SessionNotFoundError(ParleyError):
    """Raised when a session ID is not known to the store or registry."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class FolderNotFoundError(ParleyError):
    """Raised when a folder ID is not known to the store."""

    def __init__(self, folder_id: str) -> None:
        super().__init__(f"Folder {folder_id} not found")
        self.folder_id = folder_id


class ProcessNotFoundError(ParleyError, KeyError):
    """Raised when writing to a process that has exited or never existed."""

    def __init__(self, process_id: str) -> None:
        super().__init__(f"Process {process_id} not found")
        self.process_id = process_id

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]


class NoActiveProcessError(ParleyError):
    """Raised when responding to a session that has no attached process."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} has no running process")
        self.session_id = session_id


class StoreError(ParleyError):
    """Raised when the session store cannot be read or written."""

    pass
