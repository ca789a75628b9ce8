"""Git working-tree status, collected through any execution context.

GitStatusPoller runs one polling task per repository path while at
least one client is subscribed, and publishes a GitStatusUpdated event
only when the snapshot changes.
"""
from __future__ import annotations

import asyncio
import logging

from threadloom.adapters.event_bus import EventHub, Subscription, git_channel
from threadloom.adapters.events import GitStatusUpdated

from .errors import RemoteConnectionError
from .models import GitFileChange, GitStatus, RepoLocation, to_payload
from .runners.base import ExecutionContext
from .runners.resolver import ContextResolver

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 30.0


def parse_ahead_behind(text: str) -> tuple[int, int]:
    """`rev-list --left-right --count @{u}...HEAD` prints "behind<TAB>ahead"."""
    parts = text.split()
    try:
        behind = int(parts[0]) if parts else 0
        ahead = int(parts[1]) if len(parts) > 1 else 0
    except ValueError:
        return 0, 0
    return ahead, behind


def parse_porcelain(text: str) -> list[GitFileChange]:
    """Parse `git status --porcelain` (v1, newline separated).

    A path changed both in the index and the worktree yields two
    entries, one staged and one not.
    """
    files: list[GitFileChange] = []
    for raw in text.splitlines():
        line = raw.rstrip("\r")
        if len(line) < 4:
            continue
        staged_code, unstaged_code, rest = line[0], line[1], line[3:]
        if staged_code == "R" or unstaged_code == "R":
            old_path, sep, new_path = rest.partition(" -> ")
            if not sep:
                new_path, old_path = rest, ""
            files.append(GitFileChange(
                status="R", path=new_path, old_path=old_path or None, staged=staged_code == "R",
            ))
            continue
        if staged_code == "?" and unstaged_code == "?":
            files.append(GitFileChange(status="?", path=rest, staged=False))
            continue
        if staged_code not in (" ", "?"):
            files.append(GitFileChange(status=staged_code, path=rest, staged=True))
        if unstaged_code not in (" ", "?"):
            files.append(GitFileChange(status=unstaged_code, path=rest, staged=False))
    return files


def parse_numstat(text: str) -> tuple[int, int]:
    """Total additions and deletions of `git diff --numstat`. Binary files count 0."""
    additions = deletions = 0
    for line in text.splitlines():
        parts = line.split("\t")
        if len(parts) < 2:
            continue
        if parts[0].isdigit():
            additions += int(parts[0])
        if parts[1].isdigit():
            deletions += int(parts[1])
    return additions, deletions


async def collect_git_status(context: ExecutionContext, path: str) -> GitStatus:
    """Snapshot of the repository at path. Each step tolerates failure."""
    status = GitStatus()

    result = await context.run("git", ["rev-parse", "--abbrev-ref", "HEAD"], path, timeout=GIT_TIMEOUT)
    if result.ok and result.stdout.strip():
        status.branch = result.stdout.strip()

    result = await context.run(
        "git", ["rev-list", "--left-right", "--count", "@{u}...HEAD"], path, timeout=GIT_TIMEOUT,
    )
    if result.ok:
        status.ahead, status.behind = parse_ahead_behind(result.stdout)

    result = await context.run("git", ["status", "--porcelain"], path, timeout=GIT_TIMEOUT)
    if result.ok:
        status.files = parse_porcelain(result.stdout)
    else:
        logger.warning(
            "git status failed on %s for %s: %s",
            context.describe(), path, result.stderr.strip()[:300],
        )

    result = await context.run("git", ["diff", "--numstat", "HEAD"], path, timeout=GIT_TIMEOUT)
    if result.ok:
        status.additions, status.deletions = parse_numstat(result.stdout)
    return status


class _PathPoll:
    def __init__(self, key: str, location: RepoLocation) -> None:
        self.key = key
        self.location = location
        self.path = location.path
        self.subscribers = 0
        self.last: GitStatus | None = None
        self.task: asyncio.Task | None = None


class GitStatusPoller:
    """Per-path polling tasks, alive only while someone is subscribed."""

    def __init__(self, hub: EventHub, resolver: ContextResolver, interval: float = 5.0) -> None:
        self.hub = hub
        self.resolver = resolver
        self.interval = interval
        self._polls: dict[str, _PathPoll] = {}
        self._subscribers: dict[Subscription, str] = {}

    def path_key(self, location: RepoLocation) -> str:
        context = self.resolver.context_for(location)
        return f"{context.target_key}:{location.path}"

    def _poll_for(self, location: RepoLocation) -> _PathPoll:
        key = self.path_key(location)
        poll = self._polls.get(key)
        if poll is None:
            poll = _PathPoll(key, location)
            self._polls[key] = poll
        return poll

    def subscribe(self, location: RepoLocation) -> Subscription:
        poll = self._poll_for(location)
        subscription = self.hub.subscribe(git_channel(poll.key))
        self._subscribers[subscription] = poll.key
        poll.subscribers += 1
        if poll.task is None or poll.task.done():
            poll.task = asyncio.create_task(self._run(poll))
            logger.info("Git polling started for %s", poll.key)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Close subscription; the last one out cancels its path's task."""
        subscription.close()
        key = self._subscribers.pop(subscription, None)
        poll = self._polls.get(key) if key is not None else None
        if poll is None:
            return
        poll.subscribers = max(0, poll.subscribers - 1)
        if poll.subscribers == 0:
            if poll.task is not None:
                poll.task.cancel()
            del self._polls[poll.key]
            logger.info("Git polling stopped for %s", poll.key)

    async def refresh(self, location: RepoLocation) -> GitStatus:
        """Collect now (e.g. after a commit) and publish if changed."""
        poll = self._polls.get(self.path_key(location))
        if poll is None:
            context = await self.resolver.resolve(location)
            return await collect_git_status(context, location.path)
        return await self._refresh(poll)

    async def _refresh(self, poll: _PathPoll) -> GitStatus:
        context = await self.resolver.resolve(poll.location)
        status = await collect_git_status(context, poll.path)
        if status != poll.last:
            poll.last = status
            self.hub.publish(git_channel(poll.key), GitStatusUpdated(
                path=poll.path, status=to_payload(status),
            ))
        return status

    async def _run(self, poll: _PathPoll) -> None:
        while True:
            try:
                await self._refresh(poll)
            except RemoteConnectionError as exc:
                logger.warning("Git polling for %s: %s", poll.key, exc)
            await asyncio.sleep(self.interval)

    async def close(self) -> None:
        tasks = [p.task for p in self._polls.values() if p.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._polls.clear()
        self._subscribers.clear()
