"""Detection of running CLI processes and their conversations."""

from __future__ import annotations

import asyncio
import os
import re
import shlex
import time
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

from convopulse.analysis.conversation import (
    UNKNOWN_WORKING_DIR,
    Conversation,
    EnrichmentResult,
    RunningProcess,
)
from convopulse.analysis.metrics import UNKNOWN
from convopulse.analysis.state import ConversationStatus, StateCalculator
from convopulse.logging import get_logger

if TYPE_CHECKING:
    from convopulse.analysis.messages import Message

log = get_logger("processes")

CLI_EXECUTABLE = "claude"
PS_COMMAND = ("ps", "-eo", "pid=,user=,args=")

_CWD_FLAG = re.compile(r"--cwd[=\s]+(\S+)")
# Helpers that mention the CLI but are not a CLI session
_EXCLUDED = ("chrome_crashpad_handler", "create-claude-config", "analytics", "Claude.app")

MessageLoader = Callable[[str], Awaitable[Sequence[Any]]]


def parse_ps_output(output: str, executable: str = CLI_EXECUTABLE) -> list[RunningProcess]:
    """CLI processes from ``ps -eo pid=,user=,args=`` output."""
    processes: list[RunningProcess] = []
    for line in output.splitlines():
        parts = line.split(None, 2)
        if len(parts) < 3:
            continue
        pid, _user, command = parts
        command = command.strip()
        if any(marker in command for marker in _EXCLUDED):
            continue
        try:
            argv = shlex.split(command)
        except ValueError:
            argv = command.split()
        if not argv or os.path.basename(argv[0]) != executable:
            continue
        match = _CWD_FLAG.search(command)
        processes.append(RunningProcess(
            pid=pid,
            command=command,
            working_dir=match.group(1) if match else UNKNOWN_WORKING_DIR,
            start_time=time.strftime("%Y-%m-%dT%H:%M:%S"),
        ))
    return processes


def _matches(process: RunningProcess, project: str) -> bool:
    if not project or project == UNKNOWN:
        return False
    return project in process.working_dir or project in process.command


class ProcessDetector:
    """Finds running CLI sessions and ties them to conversations.

    Process listings are cached for ``ttl`` seconds since several refresh
    paths ask for them in quick succession.
    """

    def __init__(
        self,
        message_loader: MessageLoader | None = None,
        ttl: float = 0.5,
        executable: str = CLI_EXECUTABLE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._load_messages = message_loader
        self.ttl = ttl
        self.executable = executable
        self._clock = clock
        self._cached: list[RunningProcess] | None = None
        self._cached_at = 0.0

    async def _run_ps(self) -> str:
        proc = await asyncio.create_subprocess_exec(
            *PS_COMMAND,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await proc.communicate()
        return stdout.decode("utf-8", errors="replace")

    async def detect_running_processes(self) -> list[RunningProcess]:
        now = self._clock()
        if self._cached is not None and now - self._cached_at < self.ttl:
            return self._cached
        try:
            output = await self._run_ps()
        except OSError as e:
            log.debug("Process listing failed: %s", e)
            return []
        self._cached = parse_ps_output(output, self.executable)
        self._cached_at = now
        return self._cached

    def get_cached_processes(self) -> list[RunningProcess]:
        if self._cached is not None and self._clock() - self._cached_at < self.ttl:
            return self._cached
        return []

    def clear_cache(self) -> None:
        self._cached = None
        self._cached_at = 0.0

    async def has_active_processes(self) -> bool:
        return bool(await self.detect_running_processes())

    async def enrich_with_running_processes(
        self,
        conversations: list[Conversation],
        root_dir: Path,
        state_calculator: StateCalculator,
    ) -> EnrichmentResult:
        """Attach processes to conversations and recompute their state.

        A process matches a conversation when the conversation's project name
        appears in its working directory or command line. A process with no
        known working directory is given to the most recently modified
        conversation.
        """
        processes = await self.detect_running_processes()
        if not processes:
            for conversation in conversations:
                conversation.running_process = None
            return EnrichmentResult(conversations, [], 0)

        newest = max(conversations, key=lambda c: c.last_modified, default=None)
        claimed: set[str] = set()

        for conversation in conversations:
            match = next((p for p in processes if _matches(p, conversation.project)), None)
            if match is None and conversation is newest and processes[0].working_dir == UNKNOWN_WORKING_DIR:
                match = processes[0]
            if match is None:
                conversation.running_process = None
                continue

            claimed.add(match.pid)
            conversation.running_process = RunningProcess(
                pid=match.pid,
                command=match.command,
                working_dir=match.working_dir,
                start_time=match.start_time,
                has_active_command=True,
            )
            conversation.status = ConversationStatus.ACTIVE
            conversation.conversation_state = state_calculator.determine_conversation_state(
                await self._messages_for(conversation),
                conversation.last_modified,
                conversation.running_process,
            )

        orphans = [p for p in processes if p.pid not in claimed]
        log.debug("Attached %d of %d CLI processes (root %s)", len(claimed), len(processes), root_dir)
        return EnrichmentResult(conversations, orphans, len(processes))

    async def _messages_for(self, conversation: Conversation) -> Sequence[Message | Any]:
        if conversation.messages is not None:
            return conversation.messages
        if self._load_messages is None:
            return []
        try:
            return await self._load_messages(conversation.file_path)
        except OSError as e:
            log.debug("Cannot reload %s for state: %s", conversation.file_path, e)
            return []
