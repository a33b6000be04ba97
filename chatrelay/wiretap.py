"""
Wire log: what each turn actually said.

WireLog appends one JSONL entry per inbound user message and per outbound
assistant message or turn failure. `chatrelay tap` renders it.
It is separate from the debug log: no stack traces, just the conversation.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

C_RESET = "\033[0m"
C_BOLD = "\033[1m"
C_DIM = "\033[2m"
C_USER = "\033[96m"
C_ASSISTANT = "\033[93m"
C_ERROR = "\033[91m"

ROLE_COLORS = {
    "user": C_USER,
    "assistant": C_ASSISTANT,
    "error": C_ERROR,
}

MAX_CONTENT = 2000


class WireLog:
    """
    Line-buffered JSONL writer.

    Entry format:
        {"ts": "...", "dir": "inbound|outbound", "role": "user|assistant|error",
         "model": "...", "conv": "...", "stream": "...", "len": 12, "content": "..."}
    """

    def __init__(self, log_path: str):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = None

    def _ensure_open(self):
        if self._file is None:
            self._file = open(self.log_path, "a", buffering=1)

    def log(
        self,
        direction: str,
        role: str,
        content: str,
        model: str = "",
        conversation_id: str = "",
        stream_id: str = "",
        tools: list[str] | None = None,
    ):
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "dir": direction,
            "role": role,
            "model": model,
            "conv": conversation_id,
            "stream": stream_id,
            "len": len(content),
        }
        if tools:
            entry["tools"] = tools
        if len(content) <= MAX_CONTENT:
            entry["content"] = content
        else:
            half = MAX_CONTENT // 2
            entry["content"] = (
                content[:half]
                + f"\n\n[... {len(content) - MAX_CONTENT} chars truncated ...]\n\n"
                + content[-half:]
            )

        try:
            self._ensure_open()
            self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError as e:
            logger.warning("Wire log write failed (%s): %s", self.log_path, e)

    def close(self):
        if self._file:
            self._file.close()
            self._file = None


def format_entry(entry: dict, raw: bool = False) -> str:
    if raw:
        return json.dumps(entry, ensure_ascii=False)

    try:
        time_str = datetime.fromisoformat(entry.get("ts", "")).strftime("%H:%M:%S")
    except (ValueError, TypeError):
        time_str = "??:??:??"

    role = entry.get("role", "?")
    arrow = "──▶" if entry.get("dir") == "inbound" else "◀──"
    color = ROLE_COLORS.get(role, C_RESET)

    header = f"  {C_DIM}{time_str} {arrow}{C_RESET} {color}{C_BOLD}{role.upper()}{C_RESET}"
    if entry.get("model"):
        header += f"  [{entry['model']}]"
    if entry.get("tools"):
        header += f"  tools: {', '.join(entry['tools'])}"
    header += f"  {C_DIM}({entry.get('len', 0)} chars) conv:{entry.get('conv', '')[:16]}{C_RESET}"

    lines = [header]
    for cline in (entry.get("content") or "").split("\n")[:15]:
        lines.append(f"      {cline}")
    return "\n".join(lines)


def _emit(line: str, role_filter: str | None, raw: bool):
    line = line.strip()
    if not line:
        return
    try:
        entry = json.loads(line)
    except json.JSONDecodeError:
        return
    if role_filter and entry.get("role") != role_filter:
        return
    print(format_entry(entry, raw=raw))


def live_tap(
    log_path: str | None = None,
    follow: bool = True,
    last_n: int = 20,
    role_filter: str | None = None,
    raw: bool = False,
):
    """Print the last `last_n` wire entries, then follow new ones (tail -f)."""
    if log_path is None:
        from chatrelay.config import get_config
        log_path = get_config().get("wiretap", {}).get("path", "./data/wire.jsonl")

    wire_path = Path(log_path)
    if not wire_path.exists():
        print(f"  No wire log found at {wire_path}. Start the server first: chatrelay serve")
        return

    with open(wire_path) as f:
        all_lines = f.readlines()
    for line in all_lines[max(0, len(all_lines) - last_n):]:
        _emit(line, role_filter, raw)

    if not follow:
        return

    try:
        with open(wire_path) as f:
            f.seek(0, 2)
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.1)
                    continue
                _emit(line, role_filter, raw)
    except KeyboardInterrupt:
        pass
