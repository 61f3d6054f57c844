"""Test helpers for parley: payload encoding and a scripted supervisor."""

import os

import orjson

from parley.core.errors import ProcessNotFoundError
from parley.core.supervisor import build_agent_args


def encode_lines(*payloads) -> str:
    """Encode payloads as newline-delimited JSON (strings are passed through)."""
    parts = []
    for payload in payloads:
        if isinstance(payload, str):
            parts.append(payload)
        else:
            parts.append(orjson.dumps(payload).decode() + "\n")
    return "".join(parts)


class FakeSupervisor:
    """Stands in for Supervisor: records calls and lets tests drive events."""

    def __init__(self) -> None:
        self.on_data = None
        self.on_exit = None
        self.on_spawn = None
        self.started: list[dict] = []
        self.inputs: list[tuple[str, str]] = []
        self.control_keys: list[tuple[str, bool]] = []
        self.killed: list[str] = []
        self._live: set[str] = set()
        self._owners: dict[str, str] = {}
        self._unreported: list[str] = []

    def start(
        self,
        session_id,
        cwd,
        continuation_id,
        is_first_turn,
        permission_mode="default",
        model=None,
        prompt=None,
    ) -> str:
        args = build_agent_args(continuation_id, is_first_turn, permission_mode, model, prompt)
        process_id = f"proc-{len(self.started)}"
        self.started.append(
            {
                "process_id": process_id,
                "session_id": session_id,
                "cwd": cwd,
                "continuation_id": continuation_id,
                "is_first_turn": is_first_turn,
                "permission_mode": permission_mode,
                "model": model,
                "prompt": prompt,
                "args": args,
            }
        )
        self._live.add(process_id)
        self._owners[process_id] = session_id
        return process_id

    def _check(self, process_id: str) -> None:
        if process_id not in self._live:
            raise ProcessNotFoundError(process_id)

    def send_input(self, process_id: str, text: str) -> None:
        self._check(process_id)
        self.inputs.append((process_id, text))

    def send_control_key(self, process_id: str, allow: bool) -> None:
        self._check(process_id)
        self.control_keys.append((process_id, allow))

    def resize(self, process_id: str, cols: int, rows: int) -> None:
        pass

    def kill(self, process_id: str) -> None:
        if process_id in self._live:
            self._live.discard(process_id)
            self.killed.append(process_id)
            self._unreported.append(process_id)

    def kill_all(self) -> None:
        for process_id in list(self._live):
            self.kill(process_id)

    async def wait_closed(self) -> None:
        """Report killed processes that no test exited explicitly."""
        while self._unreported:
            process_id = self._unreported.pop(0)
            self.on_exit(process_id, self._owners[process_id], -15)

    def spawn(self, process_id: str, pid: int) -> None:
        """Report that the process booted as OS pid."""
        self.on_spawn(process_id, self._owners[process_id], pid)

    def emit(self, process_id: str, *payloads) -> None:
        """Deliver payloads as one output chunk."""
        self.on_data(process_id, self._owners[process_id], encode_lines(*payloads))

    def emit_raw(self, process_id: str, text: str) -> None:
        self.on_data(process_id, self._owners[process_id], text)

    def exit(self, process_id: str, code: int = 0) -> None:
        self._live.discard(process_id)
        if process_id in self._unreported:
            self._unreported.remove(process_id)
        self.on_exit(process_id, self._owners[process_id], code)


def read_agent_args(script) -> list[str]:
    args_file = os.path.join(os.path.dirname(script), "args.txt")
    with open(args_file) as f:
        return f.read().splitlines()


# --- stream-json payload builders -----------------------------------------


def system_init(session_id="agent-1", model="claude-sonnet-4-5", cwd="/tmp"):
    return {
        "type": "system",
        "subtype": "init",
        "session_id": session_id,
        "model": model,
        "cwd": cwd,
        "tools": ["Read", "Edit", "Bash"],
        "permissionMode": "default",
    }


def assistant(message_id="msg-1", content=None, uuid=None, text=None):
    if content is None:
        content = [{"type": "text", "text": text or ""}]
    payload = {
        "type": "assistant",
        "message": {
            "id": message_id,
            "model": "claude-sonnet-4-5",
            "role": "assistant",
            "content": content,
        },
        "parent_tool_use_id": None,
    }
    if uuid:
        payload["uuid"] = uuid
    return payload


def tool_use(name, tool_input, tool_use_id="toolu_1"):
    return {"type": "tool_use", "id": tool_use_id, "name": name, "input": tool_input}


def tool_result(text, tool_use_id="toolu_1", is_error=False, uuid=None):
    payload = {
        "type": "user",
        "message": {
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "tool_use_id": tool_use_id,
                    "content": text,
                    "is_error": is_error,
                }
            ],
        },
    }
    if uuid:
        payload["uuid"] = uuid
    return payload


def result(cost=0.01, input_tokens=1000, output_tokens=200, uuid=None, is_error=False):
    payload = {
        "type": "result",
        "subtype": "error" if is_error else "success",
        "is_error": is_error,
        "result": "done",
        "total_cost_usd": cost,
        "duration_ms": 1500,
        "num_turns": 1,
        "session_id": "agent-1",
        "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
    }
    if uuid:
        payload["uuid"] = uuid
    return payload


def text_delta(text):
    return {
        "type": "stream_event",
        "event": {
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "text_delta", "text": text},
        },
    }


def permission_request(tool_name="Bash", description="Run ls", tool_input=None):
    return {
        "type": "permission_request",
        "permission_request": {
            "type": "tool_use",
            "tool_name": tool_name,
            "description": description,
            "input": tool_input or {"command": "ls"},
        },
    }


def input_request(message="Pick one", options=None, default=None):
    request = {"type": "choice" if options else "text", "message": message}
    if options:
        request["options"] = [{"label": o, "value": o} for o in options]
    if default:
        request["default"] = default
    return {"type": "input_request", "input_request": request}
