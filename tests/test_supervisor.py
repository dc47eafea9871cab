"""ProcessSupervisor unit tests.

Test coverage:
- Spawning with piped stdio and environment overrides
- Spawn failures surface as SpawnError
- Process isolation (new session/process group)
- Termination: idempotent, kills the whole group, tolerates exited children
- Stderr draining
- Credential redaction in logged argv
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import pytest

from mcp_stdio_bridge.errors import SpawnError
from mcp_stdio_bridge.runtime import ChildState, ProcessSpec, ProcessSupervisor
from mcp_stdio_bridge.runtime.supervisor import IS_WINDOWS


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def supervisor() -> ProcessSupervisor:
    """Create ProcessSupervisor with a short kill timeout for testing."""
    return ProcessSupervisor(kill_timeout=1.0)


def _py(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def _alive(pid: int) -> bool:
    """True if pid exists and is not a zombie."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    stat = Path(f"/proc/{pid}/stat")
    if stat.exists():
        try:
            state = stat.read_text().rsplit(")", 1)[1].split()[0]
        except (OSError, IndexError):
            return False
        return state not in ("Z", "X")
    return True


async def _wait_gone(pid: int, timeout: float = 3.0) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if not _alive(pid):
            return True
        await asyncio.sleep(0.05)
    return not _alive(pid)


# =============================================================================
# Spawn Tests
# =============================================================================


class TestSpawn:
    """Test spawning children."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_stdio_roundtrip(self, supervisor: ProcessSupervisor):
        """Bytes written to stdin come back on stdout."""
        child = await supervisor.spawn(ProcessSpec(argv=_py(
            "import sys\nfor line in sys.stdin:\n    print(line.strip().upper(), flush=True)"
        )))
        try:
            assert child.state is ChildState.RUNNING
            child.write(b"hello\n")
            await child.drain()
            line = await asyncio.wait_for(child.stdout.readline(), timeout=5)
            assert line.strip() == b"HELLO"
        finally:
            await supervisor.kill(child)

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_env_overrides(self, supervisor: ProcessSupervisor):
        """Overrides are merged over the inherited environment."""
        child = await supervisor.spawn(ProcessSpec(
            argv=_py("import os; print(os.environ['MSB_TEST_VAR'], 'PATH' in os.environ)"),
            env={"MSB_TEST_VAR": "value-1"},
        ))
        try:
            output = await asyncio.wait_for(child.stdout.read(), timeout=5)
            assert output.decode().split() == ["value-1", "True"]
        finally:
            await supervisor.kill(child)

    @pytest.mark.asyncio
    async def test_missing_executable(self, supervisor: ProcessSupervisor):
        """An unresolvable command raises SpawnError naming it."""
        with pytest.raises(SpawnError) as exc_info:
            await supervisor.spawn(ProcessSpec(argv=["definitely-not-a-real-mcp-server-xyz"]))
        assert exc_info.value.argv0 == "definitely-not-a-real-mcp-server-xyz"
        assert "definitely-not-a-real-mcp-server-xyz" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_empty_argv(self, supervisor: ProcessSupervisor):
        with pytest.raises(SpawnError):
            await supervisor.spawn(ProcessSpec(argv=[]))

    @pytest.mark.asyncio
    async def test_missing_cwd(self, supervisor: ProcessSupervisor, tmp_path: Path):
        with pytest.raises(SpawnError):
            await supervisor.spawn(ProcessSpec(argv=_py("pass"), cwd=tmp_path / "missing"))

    @pytest.mark.asyncio
    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX-specific test")
    async def test_exec_format_error(self, supervisor: ProcessSupervisor, tmp_path: Path):
        """An executable file that is not a program raises SpawnError, not OSError."""
        bogus = tmp_path / "notabinary"
        bogus.write_bytes(b"\x00\x01\x02 garbage, no shebang\n")
        bogus.chmod(0o755)
        with pytest.raises(SpawnError) as exc_info:
            await supervisor.spawn(ProcessSpec(argv=[str(bogus)]))
        assert exc_info.value.argv0 == str(bogus)


# =============================================================================
# Process Isolation Tests
# =============================================================================


class TestProcessIsolation:
    """Test process isolation (new session/process group)."""

    @pytest.mark.asyncio
    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX-specific test")
    @pytest.mark.timeout(10)
    async def test_new_session_posix(self, supervisor: ProcessSupervisor):
        """Child leads its own session and process group."""
        child = await supervisor.spawn(ProcessSpec(
            argv=_py("import os; print(os.getsid(0), os.getpgid(0), os.getpid())")
        ))
        try:
            output = await asyncio.wait_for(child.stdout.read(), timeout=5)
        finally:
            await supervisor.kill(child)

        sid, pgid, pid = (int(x) for x in output.split())
        assert sid != os.getsid(os.getpid())
        assert pgid == pid == child.pid


# =============================================================================
# Termination Tests
# =============================================================================


class TestTermination:
    """Test process termination."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_kill_running_child(self, supervisor: ProcessSupervisor):
        """A child ignoring stdin EOF is still force killed."""
        child = await supervisor.spawn(ProcessSpec(argv=_py("import time; time.sleep(100)")))
        await supervisor.kill(child)
        assert child.state is ChildState.EXITED
        assert not child.is_running

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_kill_idempotent(self, supervisor: ProcessSupervisor):
        child = await supervisor.spawn(ProcessSpec(argv=_py("import time; time.sleep(100)")))
        await supervisor.kill(child)
        await supervisor.kill(child)
        assert child.state is ChildState.EXITED

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_kill_already_exited(self, supervisor: ProcessSupervisor):
        """Killing a child that already exited is not an error."""
        child = await supervisor.spawn(ProcessSpec(argv=_py("pass")))
        await asyncio.wait_for(child.wait(), timeout=5)
        await supervisor.kill(child)
        assert child.state is ChildState.EXITED
        assert child.returncode == 0

    @pytest.mark.asyncio
    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX-specific test")
    @pytest.mark.timeout(15)
    async def test_kill_reaches_grandchildren(self, supervisor: ProcessSupervisor):
        """Like npx launching node: the whole process group goes down."""
        child = await supervisor.spawn(ProcessSpec(argv=[
            "sh", "-c", "sleep 100 & echo $!; wait",
        ]))
        line = await asyncio.wait_for(child.stdout.readline(), timeout=5)
        grandchild = int(line.strip())
        assert _alive(grandchild)

        await supervisor.kill(child)

        assert await _wait_gone(grandchild)

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_write_after_kill(self, supervisor: ProcessSupervisor):
        """Writing to a terminated child raises ConnectionResetError."""
        child = await supervisor.spawn(ProcessSpec(argv=_py("import time; time.sleep(100)")))
        await supervisor.kill(child)
        with pytest.raises(ConnectionResetError):
            child.write(b"{}\n")

    @pytest.mark.asyncio
    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX-specific test")
    @pytest.mark.timeout(10)
    async def test_child_kill_direct(self, supervisor: ProcessSupervisor):
        """ChildProcess.kill force kills only the child itself."""
        child = await supervisor.spawn(ProcessSpec(argv=_py("import time; time.sleep(100)")))
        try:
            child.kill()
            returncode = await asyncio.wait_for(child.wait(), timeout=5)
            assert returncode == -9
        finally:
            await supervisor.kill(child)


# =============================================================================
# Stderr Tests
# =============================================================================


class TestStderrHandling:
    """Test stderr draining."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_stderr_callback(self, supervisor: ProcessSupervisor):
        chunks: list[bytes] = []
        child = await supervisor.spawn(ProcessSpec(
            argv=_py("import sys; sys.stderr.write('diag\\n'); sys.stderr.flush()")
        ))
        child.start_stderr_drain(chunks.append)
        await asyncio.wait_for(child.wait(), timeout=5)
        # Let the drain task observe EOF
        await asyncio.sleep(0.1)
        await supervisor.kill(child)
        assert b"diag" in b"".join(chunks)

    @pytest.mark.asyncio
    @pytest.mark.timeout(20)
    async def test_chatty_stderr_does_not_block(self, supervisor: ProcessSupervisor):
        """A child writing far more than a pipe buffer to stderr still finishes."""
        child = await supervisor.spawn(ProcessSpec(argv=_py(
            "import sys\n"
            "for _ in range(2000):\n"
            "    sys.stderr.write('x' * 512 + '\\n')\n"
            "print('done', flush=True)"
        )))
        child.start_stderr_drain(lambda chunk: None)
        try:
            line = await asyncio.wait_for(child.stdout.readline(), timeout=10)
            assert line.strip() == b"done"
        finally:
            await supervisor.kill(child)


class TestRedaction:
    """Test argv display masking."""

    def test_display_argv_masks_credential(self):
        spec = ProcessSpec(
            argv=["npx", "-y", "@stripe/mcp", "--api-key=sk_test_secret"],
            redact=("sk_test_secret",),
        )
        shown = spec.display_argv()
        assert "sk_test_secret" not in shown
        assert shown.endswith("--api-key=***")

    def test_empty_redaction_ignored(self):
        spec = ProcessSpec(argv=["srv", "--flag"], redact=("",))
        assert spec.display_argv() == "srv --flag"
