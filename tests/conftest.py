"""
Pytest fixtures and configuration for the Vigil test suite.
"""

from __future__ import annotations

import json
import shlex
from typing import Any, Callable, Sequence

import pytest

from vigil.agent.completion import CompletionError, CompletionOptions, CompletionProvider
from vigil.config.settings import StorageConfig, VigilSettings
from vigil.core.ledger import InMemoryToolRunStore
from vigil.core.risk import RiskAssessor
from vigil.core.runner import CommandResult, CommandRunner
from vigil.core.scope import TargetPolicy

# ============================================================================
# Sample tool output
# ============================================================================

NMAP_PING_XML = """<?xml version="1.0" encoding="UTF-8"?>
<nmaprun scanner="nmap" args="nmap -sn 192.168.1.10" version="7.94">
  <host>
    <status state="up" reason="arp-response"/>
    <address addr="192.168.1.10" addrtype="ipv4"/>
    <hostnames/>
  </host>
  <runstats><hosts up="1" down="0" total="1"/></runstats>
</nmaprun>
"""

NMAP_TCP_XML = """<?xml version="1.0" encoding="UTF-8"?>
<nmaprun scanner="nmap" version="7.94">
  <host>
    <status state="up" reason="syn-ack"/>
    <address addr="192.168.1.10" addrtype="ipv4"/>
    <hostnames><hostname name="printer.lan" type="PTR"/></hostnames>
    <ports>
      <port protocol="tcp" portid="22">
        <state state="open" reason="syn-ack"/>
        <service name="ssh" version="9.6"/>
      </port>
      <port protocol="tcp" portid="80">
        <state state="closed" reason="conn-refused"/>
        <service name="http"/>
      </port>
      <port protocol="tcp" portid="443">
        <state state="open" reason="syn-ack"/>
      </port>
    </ports>
  </host>
</nmaprun>
"""

WHOIS_OUTPUT = """% IANA WHOIS server
Domain Name: EXAMPLE.COM
Registrar: RESERVED-Internet Assigned Numbers Authority
Creation Date: 1995-08-14T04:00:00Z
Name Server: A.IANA-SERVERS.NET
Name Server: B.IANA-SERVERS.NET
>>> Last update of whois database: 2024-05-01T00:00:00Z <<<
"""


# ============================================================================
# Fakes
# ============================================================================

Handler = Callable[[str, list[str]], "CommandResult | BaseException"]


class FakeCommandRunner(CommandRunner):
    """
    CommandRunner that never spawns a process.

    ``handler`` receives (command, args) and returns a CommandResult or an
    exception to raise. Every call is recorded in ``calls``.
    """

    def __init__(self, handler: Handler | None = None) -> None:
        super().__init__()
        self.handler = handler
        self.calls: list[tuple[str, list[str], float | None]] = []

    @staticmethod
    def result(argv: Sequence[str], stdout: str = "", stderr: str = "", exit_code: int = 0) -> CommandResult:
        return CommandResult(
            command=list(argv),
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            duration_ms=1.0,
        )

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        timeout: float | None = None,
        max_output_bytes: int | None = None,
    ) -> CommandResult:
        args = list(args)
        self.calls.append((command, args, timeout))
        if self.handler is None:
            return self.result([command, *args])
        outcome = self.handler(command, args)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    @property
    def command_lines(self) -> list[str]:
        return [shlex.join([c, *a]) for c, a, _ in self.calls]


class FakeCompletionProvider(CompletionProvider):
    """
    Scripted completion provider.

    Replies are returned in order; an exception in the script is raised
    instead. Once the script runs out the last reply repeats.
    """

    def __init__(self, *replies: str | dict | BaseException) -> None:
        self.replies = list(replies)
        self.calls: list[tuple[list[dict[str, str]], CompletionOptions]] = []

    async def complete(self, messages, options: CompletionOptions) -> str:
        self.calls.append(([dict(m) for m in messages], options))
        if not self.replies:
            raise CompletionError("no scripted reply")
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, dict):
            return json.dumps(reply)
        return reply


def default_tool_handler(command: str, args: list[str]) -> CommandResult:
    """Plausible output for nmap, dig and whois invocations."""
    argv = [command, *args]
    if command == "nmap":
        xml = NMAP_PING_XML if "-sn" in args else NMAP_TCP_XML
        return FakeCommandRunner.result(argv, stdout=xml)
    if command == "dig":
        name, record_type = args[-2], args[-1]
        if name.startswith(("www.", "mail.")) or name == "example.com":
            answer = "mail.example.com." if record_type == "MX" else "93.184.216.34"
            return FakeCommandRunner.result(argv, stdout=answer + "\n")
        return FakeCommandRunner.result(argv, stdout="")
    if command == "whois":
        return FakeCommandRunner.result(argv, stdout=WHOIS_OUTPUT)
    return FakeCommandRunner.result(argv, exit_code=127, stderr="unknown command")


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def settings(tmp_path, monkeypatch):
    """VigilSettings isolated from the developer's environment."""
    for name in ("ANTHROPIC_API_KEY", "VIGIL_ANTHROPIC_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return VigilSettings(storage=StorageConfig(ledger_dir=tmp_path / "runs"))


@pytest.fixture
def target_policy(settings):
    return TargetPolicy.from_config(settings.scope)


@pytest.fixture
def assessor(settings, target_policy):
    return RiskAssessor(settings.risk, target_policy)


# ============================================================================
# Execution Fixtures
# ============================================================================


@pytest.fixture
def fake_runner():
    """Fake runner answering like nmap, dig and whois would."""
    return FakeCommandRunner(default_tool_handler)


@pytest.fixture
def store():
    return InMemoryToolRunStore()


@pytest.fixture
def gate(settings, store, fake_runner):
    from vigil.agent.orchestrator import create_approval_gate

    return create_approval_gate(settings, store=store, runner=fake_runner)


@pytest.fixture
def registry(gate):
    return gate.registry
