"""Session registry.

Owns the in-memory set of sessions and wires the pipeline together:

    Supervisor data -> LineAssembler -> classify -> DuplicateFilter -> reduce
        -> store -> observers

Every change to a session goes through _commit (user actions, store errors
propagate) or _record (process events, store errors are logged), and is then
published to observers. All methods run on the event loop thread.
"""

import asyncio
import os
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path

from parley.core import state
from parley.core.config import (
    get_default_cwd,
    get_default_model,
    get_default_permission_mode,
)
from parley.core.errors import (
    FolderNotFoundError,
    NoActiveProcessError,
    ParleyError,
    SessionNotFoundError,
    StoreError,
)
from parley.core.lines import LineAssembler
from parley.core.protocol import DuplicateFilter, ParseFailure, StreamEvent, classify
from parley.core.reducer import (
    apply_process_exit,
    apply_response,
    apply_user_message,
    new_id,
    reduce,
)
from parley.core.session import Folder, Message, Session, utcnow
from parley.core.supervisor import Supervisor, terminate_process_group
from parley.logging import get_logger

logger = get_logger("registry")

TITLE_MAX_LENGTH = 50

Observer = Callable[[Session], None]
Predicate = Callable[[Session], bool]


@dataclass
class Attachment:
    """An image to pass to the agent alongside a message."""

    name: str
    data: bytes

    @classmethod
    def from_path(cls, path: str | Path) -> "Attachment":
        path = Path(path)
        return cls(name=path.name, data=path.read_bytes())


def auto_title(text: str) -> str:
    """Title derived from a message: its first line, cut at 50 characters."""
    first_line = text.split("\n")[0].strip()
    if len(first_line) > TITLE_MAX_LENGTH:
        return first_line[:TITLE_MAX_LENGTH].strip() + "..."
    return first_line


def stage_attachments(attachments: list[Attachment]) -> list[Path]:
    """Write attachments to temp files the agent can read."""
    stamp = int(time.time() * 1000)
    paths = []
    for attachment in attachments:
        path = Path(tempfile.gettempdir()) / f"parley-img-{stamp}-{Path(attachment.name).name}"
        path.write_bytes(attachment.data)
        paths.append(path)
    return paths


def build_prompt(text: str, image_paths: list[Path]) -> str:
    """Prefix a message with @path references to staged images."""
    if not image_paths:
        return text
    refs = " ".join(f"@{path}" for path in image_paths)
    return f"{refs}\n\n{text}"


def is_settled(session: Session) -> bool:
    """True once no process is attached and the session is not running."""
    return session.process_id is None and session.state != "running"


def _process_alive(pid: int | None) -> bool:
    if pid is None:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def is_owned_by_live_process(session: Session) -> bool:
    """True if a running parley process still has a turn open on this session."""
    return session.process_id is not None and _process_alive(session.owner_pid)


def _recover(session: Session) -> Session:
    """Reset a session left busy by a parley process that is gone.

    Sessions whose owning process is still alive are left as they are.
    """
    if is_owned_by_live_process(session):
        return session
    if session.process_id is None and session.state in ("idle", "waiting_input"):
        if session.state == "idle" or session.pending_question:
            return session
    return replace(
        session,
        state="waiting_input" if session.pending_question else "idle",
        process_id=None,
        owner_pid=None,
        agent_pid=None,
        in_progress_message_id=None,
    )


class SessionRegistry:
    """Sessions keyed by ID, driven by one Supervisor.

    Args:
        supervisor: Process supervisor to use. Its callbacks are rebound to
            this registry.
    """

    def __init__(self, supervisor: Supervisor | None = None) -> None:
        self.supervisor = supervisor or Supervisor()
        self.supervisor.on_data = self.handle_data
        self.supervisor.on_exit = self.handle_exit
        self.supervisor.on_spawn = self.handle_spawn

        self._assembler = LineAssembler()
        self._duplicates = DuplicateFilter()
        self._observers: list[Observer] = []
        self._waiters: dict[str, list[tuple[Predicate, asyncio.Future]]] = {}
        self._sessions: dict[str, Session] = {}
        # Processes this registry started, and those it was asked to stop
        self._started: set[str] = set()
        self._stopped: set[str] = set()
        self._closing = False
        self._load()

    def _load(self) -> None:
        # The store copy of a recovered session is left alone until the
        # session is next written.
        for session in state.load_all():
            recovered = _recover(session)
            if recovered is not session:
                logger.debug("Recovered stale session %s", session.id)
            self._sessions[session.id] = recovered

    # --- plumbing -----------------------------------------------------------

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _refresh_ownership(self, session: Session) -> Session:
        """Pick up a turn another parley process started after this one loaded."""
        if session.process_id is not None:
            return session
        stored = state.load_session(session.id)
        if stored is None or not is_owned_by_live_process(stored):
            return session
        session = replace(
            session,
            state=stored.state,
            process_id=stored.process_id,
            owner_pid=stored.owner_pid,
            agent_pid=stored.agent_pid,
            queued_message=stored.queued_message,
        )
        self._sessions[session.id] = session
        return session

    def _kill(self, session: Session) -> None:
        if session.process_id in self._started:
            self.supervisor.kill(session.process_id)
        elif session.agent_pid is not None:
            logger.info(
                "Stopping agent %s owned by parley process %s",
                session.agent_pid,
                session.owner_pid,
            )
            terminate_process_group(session.agent_pid)

    def _write(self, session: Session, persist: list[Message]) -> None:
        for message in persist:
            state.append_message(session.id, message)
        state.save_session_fields(session)

    def _commit(self, session: Session, persist: list[Message] | None = None) -> Session:
        """Store and publish a change made by a user action."""
        self._write(session, persist or [])
        self._publish(session)
        return session

    def _record(self, session: Session, persist: list[Message], save_fields: bool = True) -> None:
        """Store and publish a change driven by process output."""
        try:
            for message in persist:
                state.append_message(session.id, message)
            if save_fields:
                state.save_session_fields(session)
        except (StoreError, SessionNotFoundError):
            logger.exception("Failed to store session %s", session.id)
        self._publish(session)

    def _publish(self, session: Session) -> None:
        self._sessions[session.id] = session
        for observer in list(self._observers):
            try:
                observer(session)
            except Exception:
                logger.exception("Observer failed for session %s", session.id)

        waiters = self._waiters.get(session.id)
        if not waiters:
            return
        remaining = []
        for predicate, future in waiters:
            if future.done():
                continue
            if predicate(session):
                future.set_result(session)
            else:
                remaining.append((predicate, future))
        self._waiters[session.id] = remaining

    # --- sessions -----------------------------------------------------------

    def create(
        self,
        cwd: str | None = None,
        title: str | None = None,
        folder_id: str | None = None,
        prompt: str | None = None,
    ) -> Session:
        """Create and persist a session and make it the active one.

        cwd falls back to the folder's default directory, then the configured
        default. With a prompt, the first turn starts immediately.

        Raises:
            FolderNotFoundError: If folder_id is given but unknown.
        """
        folder = None
        if folder_id is not None:
            folder = state.load_folder(folder_id)
            if folder is None:
                raise FolderNotFoundError(folder_id)

        now = utcnow()
        session = Session(
            id=new_id(),
            title=title or f"Session {now.astimezone():%H:%M:%S}",
            cwd=cwd or (folder.default_cwd if folder else None) or get_default_cwd(),
            created_at=now,
            updated_at=now,
            folder_id=folder_id,
        )
        state.save_session(session)
        state.set_active_session_id(session.id)
        self._publish(session)
        logger.info("Created session %s in %s", session.id, session.cwd)

        if prompt:
            return self.send_message(session.id, prompt)
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def list_sessions(self, folder_id: str | None = None) -> list[Session]:
        """Sessions, most recently updated first, optionally in one folder."""
        sessions = [
            s for s in self._sessions.values()
            if folder_id is None or s.folder_id == folder_id
        ]
        return sorted(sessions, key=lambda s: s.updated_at, reverse=True)

    def delete(self, session_id: str) -> None:
        """Kill any attached process, then remove the session everywhere.

        Raises:
            SessionNotFoundError: If the session doesn't exist.
        """
        session = self._require(session_id)
        if session.process_id is not None:
            self._kill(session)
        self._assembler.discard(session_id)
        self._duplicates.forget(session_id)
        state.delete_session(session_id)
        del self._sessions[session_id]

        for _, future in self._waiters.pop(session_id, []):
            if not future.done():
                future.set_exception(SessionNotFoundError(session_id))
        logger.info("Deleted session %s", session_id)

    def set_active(self, session_id: str | None) -> None:
        """Mark a session as active (None clears it).

        Raises:
            SessionNotFoundError: If the session doesn't exist.
        """
        if session_id is not None:
            self._require(session_id)
        state.set_active_session_id(session_id)

    def active_id(self) -> str | None:
        session_id = state.get_active_session_id()
        return session_id if session_id in self._sessions else None

    def send_message(
        self,
        session_id: str,
        text: str,
        images: list[Attachment] | None = None,
        permission_mode: str | None = None,
        model: str | None = None,
    ) -> Session:
        """Send user text to the agent, starting one process for the turn.

        While a process is attached, here or in another parley process, the
        text is queued in the store instead. The process owner sends it once
        the session returns to idle.

        Raises:
            SessionNotFoundError: If the session doesn't exist.
            ValueError: If permission_mode is invalid.
        """
        session = self._refresh_ownership(self._require(session_id))
        images = images or []
        if session.is_busy:
            if images:
                logger.warning(
                    "Dropping %d attachment(s) from queued message for %s",
                    len(images),
                    session_id,
                )
            return self.queue_message(session_id, text)

        title = auto_title(text)
        if title and title != session.title:
            session = replace(session, title=title)

        prompt = build_prompt(text, stage_attachments(images))
        transition = apply_user_message(session, text, len(images))

        is_first_turn = session.agent_session_id is None
        continuation_id = session.agent_session_id or new_id()
        process_id = self.supervisor.start(
            session_id=session.id,
            cwd=session.cwd,
            continuation_id=continuation_id,
            is_first_turn=is_first_turn,
            permission_mode=permission_mode or get_default_permission_mode(),
            model=model or get_default_model(),
            prompt=prompt,
        )
        self._started.add(process_id)
        session = replace(
            transition.session,
            process_id=process_id,
            owner_pid=os.getpid(),
            agent_pid=None,
            agent_session_id=continuation_id,
        )
        logger.debug("Session %s started process %s", session.id, process_id)

        try:
            return self._commit(session, transition.persist)
        except ParleyError:
            self.supervisor.kill(process_id)
            raise

    def queue_message(self, session_id: str, text: str) -> Session:
        """Hold text to be sent when the current turn finishes."""
        return self._set_queued(session_id, text)

    def clear_queued_message(self, session_id: str) -> Session:
        return self._set_queued(session_id, None)

    def _set_queued(self, session_id: str, text: str | None) -> Session:
        session = self._require(session_id)
        state.update_session(session_id, queued_message=text)
        session = replace(session, queued_message=text, updated_at=utcnow())
        self._publish(session)
        return session

    def owned_elsewhere(self, session_id: str) -> bool:
        """True if another parley process is running this session's turn."""
        session = self._require(session_id)
        return session.process_id is not None and session.process_id not in self._started

    def _attached_process(self, session_id: str) -> tuple[Session, str]:
        session = self._require(session_id)
        if session.process_id is None:
            raise NoActiveProcessError(session_id)
        return session, session.process_id

    def respond_to_permission(self, session_id: str, allow: bool) -> Session:
        """Allow or deny the prompt the running agent is waiting on.

        Raises:
            NoActiveProcessError: If no process is attached.
            ProcessNotFoundError: If the process already exited.
        """
        session, process_id = self._attached_process(session_id)
        self.supervisor.send_control_key(process_id, allow)
        return self._commit(apply_response(session))

    def respond_to_input(self, session_id: str, value: str) -> Session:
        """Answer the running agent's input request.

        Raises:
            NoActiveProcessError: If no process is attached.
            ProcessNotFoundError: If the process already exited.
        """
        session, process_id = self._attached_process(session_id)
        self.supervisor.send_input(process_id, value)
        return self._commit(apply_response(session))

    def stop(self, session_id: str) -> None:
        """Kill the session's process. The exit event settles its state.

        A queued message is dropped so the stop sticks. Output the process
        writes while it dies is ignored, so a partly streamed message stays
        as it is.
        """
        session = self._require(session_id)
        if session.queued_message is not None:
            session = self.clear_queued_message(session_id)
        if session.process_id is None:
            return
        if session.process_id in self._started:
            self._stopped.add(session.process_id)
            self._assembler.discard(session_id)
            self._publish(replace(session, in_progress_message_id=None))
        self._kill(session)

    def toggle_expansion(self, session_id: str, message_id: str, block_id: str) -> Session:
        """Flip a content block's expanded flag (display state only, not stored)."""
        session = self._require(session_id)
        index = session.find_message(message_id)
        if index is None:
            return session
        message = session.messages[index]
        blocks = [
            replace(b, is_expanded=not b.is_expanded) if b.id == block_id else b
            for b in message.content_blocks
        ]
        messages = list(session.messages)
        messages[index] = replace(message, content_blocks=blocks)
        session = replace(session, messages=messages)
        self._publish(session)
        return session

    def update_title(self, session_id: str, title: str) -> Session:
        session = self._require(session_id)
        return self._commit(replace(session, title=title, updated_at=utcnow()))

    def move_to_folder(self, session_id: str, folder_id: str | None) -> Session:
        """Assign a session to a folder (None removes it from any folder).

        Raises:
            FolderNotFoundError: If folder_id is given but unknown.
        """
        session = self._require(session_id)
        if folder_id is not None and state.load_folder(folder_id) is None:
            raise FolderNotFoundError(folder_id)
        return self._commit(replace(session, folder_id=folder_id, updated_at=utcnow()))

    # --- folders ------------------------------------------------------------

    def create_folder(self, name: str, default_cwd: str | None = None) -> Folder:
        folder = Folder(id=new_id(), name=name, default_cwd=default_cwd)
        state.save_folder(folder)
        return folder

    def update_folder(self, folder_id: str, **fields) -> Folder:
        return state.update_folder(folder_id, **fields)

    def delete_folder(self, folder_id: str) -> None:
        """Delete a folder; its sessions stay, unassigned."""
        state.delete_folder(folder_id)
        for session in list(self._sessions.values()):
            if session.folder_id == folder_id:
                self._publish(replace(session, folder_id=None))

    def folders(self) -> list[Folder]:
        return state.load_folders()

    # --- process events -----------------------------------------------------

    def handle_data(self, process_id: str, session_id: str, text: str) -> None:
        """Fold a chunk of process output into its session."""
        session = self._sessions.get(session_id)
        if session is None or session.process_id != process_id:
            logger.debug("Ignoring output from detached process %s", process_id)
            return
        if process_id in self._stopped:
            return

        persist: list[Message] = []
        changed = False
        save_fields = False
        for line in self._assembler.feed(session_id, text):
            message = classify(line)
            if isinstance(message, ParseFailure):
                if line.strip():
                    logger.debug("Dropped line for %s: %s", session_id, message.reason)
                continue
            if not self._duplicates.admit(session_id, message):
                logger.debug("Dropped duplicate %s for %s", type(message).__name__, session_id)
                continue

            transition = reduce(session, message)
            session = transition.session
            persist.extend(transition.persist)
            changed = True
            if not isinstance(message, StreamEvent):
                save_fields = True

        if changed:
            self._record(session, persist, save_fields=save_fields)

    def handle_spawn(self, process_id: str, session_id: str, pid: int) -> None:
        """Record the agent's OS pid so other parley processes can stop it."""
        session = self._sessions.get(session_id)
        if session is None or session.process_id != process_id:
            return
        self._record(replace(session, agent_pid=pid), [])

    def handle_exit(self, process_id: str, session_id: str, exit_code: int) -> None:
        """Settle a session after its process exits and send any queued text."""
        self._started.discard(process_id)
        self._stopped.discard(process_id)
        session = self._sessions.get(session_id)
        if session is None or session.process_id != process_id:
            logger.debug("Ignoring exit of detached process %s", process_id)
            return

        self._assembler.discard(session_id)
        self._duplicates.forget(session_id)
        if exit_code != 0:
            logger.info("Session %s process exited with code %s", session_id, exit_code)

        # Other parley processes queue text through the store
        try:
            stored = state.load_session(session_id)
        except StoreError:
            logger.exception("Failed to read queued message for %s", session_id)
            stored = None
        if stored is not None:
            session = replace(session, queued_message=stored.queued_message)

        session, queued = apply_process_exit(session)
        if queued and self._closing:
            # Stays queued for the next turn
            session = replace(session, queued_message=queued)
            queued = None
        elif queued:
            try:
                state.update_session(session_id, queued_message=None)
            except (StoreError, SessionNotFoundError):
                logger.exception("Failed to release queued message for %s", session_id)
        self._record(session, [])

        if queued:
            try:
                self.send_message(session_id, queued)
            except (ParleyError, OSError, ValueError):
                logger.exception("Failed to send queued message for %s", session_id)

    # --- observation --------------------------------------------------------

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Call observer with every published session. Returns an unsubscribe function."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    async def wait_until(
        self, session_id: str, predicate: Predicate, timeout: float | None = None
    ) -> Session:
        """Wait for a published session state that satisfies predicate.

        Raises:
            SessionNotFoundError: If the session doesn't exist or is deleted.
            asyncio.TimeoutError: If timeout elapses first.
        """
        session = self._require(session_id)
        if predicate(session):
            return session
        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(session_id, []).append((predicate, future))
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            if session_id in self._waiters:
                self._waiters[session_id] = [
                    w for w in self._waiters[session_id] if w[1] is not future
                ]

    async def wait_settled(self, session_id: str, timeout: float | None = None) -> Session:
        """Wait until no process is attached and the session is not running."""
        return await self.wait_until(session_id, is_settled, timeout)

    async def close(self) -> None:
        """Kill every process and wait for them to be reported."""
        self._closing = True
        self.supervisor.kill_all()
        await self.supervisor.wait_closed()
