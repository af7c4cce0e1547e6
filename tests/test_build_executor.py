"""
Unit Tests - Sandbox Build Executor
===================================
Container lifecycle, resource constraints, network gating, timeouts and
unconditional teardown, all against a mocked container runtime.
"""
import logging
import os
import threading
from unittest.mock import MagicMock, call

import pytest

from conftest import make_runtime
from app.core.errors import BuildFailure, BuildTimeout, InfrastructureError
from app.executor.build_executor import (
    LOG_MARKERS,
    BuildResult,
    NetworkState,
    SandboxBuildExecutor,
    SandboxSession,
    SandboxSpec,
    SessionState,
    create_log_excerpt,
    make_container_name,
    sandbox_session,
    teardown_session,
)
from app.executor.command_resolver import Framework


def _teardown_calls(runtime):
    return [c for c in runtime.mock_calls if c[0] in ("stop", "remove")]


# ---------------------------------------------------------------------------
# 1. Container creation constraints
# ---------------------------------------------------------------------------
class TestContainerCreation:

    def test_create_applies_all_constraints(self, executor, runtime, react_tree):
        executor.build(str(react_tree), "react")

        kwargs = runtime.create.call_args.kwargs
        root = os.path.abspath(str(react_tree))
        assert kwargs["image"] == "node:18-alpine"
        assert kwargs["working_dir"] == "/project"
        assert kwargs["binds"] == {root: {"bind": "/project", "mode": "rw"}}
        assert kwargs["mem_limit"] == 1024 * 1024 * 1024
        assert kwargs["memswap_limit"] == kwargs["mem_limit"]
        assert kwargs["cpu_quota"] == kwargs["cpu_period"] == 100_000
        assert kwargs["cap_drop"] == ["ALL"]
        assert kwargs["security_opt"] == ["no-new-privileges"]
        assert kwargs["dns"] == ["0.0.0.0"]
        assert kwargs["network_mode"] == "bridge"
        assert "CI=true" in kwargs["environment"]

    def test_image_is_fixed_regardless_of_framework(self, executor, runtime, tmp_path):
        executor.build(str(tmp_path), "python")
        assert runtime.create.call_args.kwargs["image"] == "node:18-alpine"

    def test_container_names_are_unique(self):
        names = {make_container_name("job1") for _ in range(50)}
        assert len(names) == 50
        assert all(n.startswith("build-job1-") for n in names)

    def test_container_name_without_job_id(self):
        assert make_container_name().startswith("build-")


# ---------------------------------------------------------------------------
# 2. Lifecycle ordering
# ---------------------------------------------------------------------------
class TestLifecycle:

    def test_successful_build_phase_order(self, executor, runtime, react_tree):
        result = executor.build(str(react_tree), "react")

        names = [c[0] for c in runtime.mock_calls if c[0] in (
            "create", "start", "exec_stream", "disconnect_network", "stop", "remove")]
        assert names == [
            "create", "start", "exec_stream", "disconnect_network",
            "exec_stream", "stop", "remove",
        ]
        commands = [c.args[1] for c in runtime.exec_stream.call_args_list]
        assert commands == ["npm ci --production=false", "npm run build"]
        assert isinstance(result, BuildResult)
        assert result.framework == Framework.REACT

    def test_react_output_is_dist(self, executor, react_tree):
        result = executor.build(str(react_tree), "react")
        assert result.output_directory == os.path.join(os.path.abspath(str(react_tree)), "dist")

    def test_next_output_is_standalone(self, executor, runtime, react_tree):
        result = executor.build(str(react_tree), "NEXT")
        assert result.output_directory.endswith(os.path.join(".next", "standalone"))
        build_cmd = runtime.exec_stream.call_args_list[1].args[1]
        assert build_cmd.startswith("npm run build")
        assert "mv .next/static .next/standalone/" in build_cmd

    def test_phase_logs_captured(self, executor, react_tree):
        result = executor.build(str(react_tree), "react")
        assert "added 120 packages" in result.phase_logs["install"]
        assert "build success" in result.phase_logs["build"]

    def test_teardown_stops_then_removes_with_volumes(self, executor, runtime, react_tree):
        executor.build(str(react_tree), "react")
        assert _teardown_calls(runtime) == [
            call.stop("container-123", 5),
            call.remove("container-123", force=True, volumes=True),
        ]


# ---------------------------------------------------------------------------
# 3. Failure paths: teardown exactly once
# ---------------------------------------------------------------------------
class TestFailurePaths:

    def test_install_failure_skips_detach_and_build(self, react_tree):
        runtime = make_runtime(exit_codes=(1,), outputs=[["npm ERR! missing lockfile\n"]])
        executor = SandboxBuildExecutor(runtime=runtime)

        with pytest.raises(BuildFailure) as exc_info:
            executor.build(str(react_tree), "react")

        assert exc_info.value.phase == "install"
        assert exc_info.value.exit_code == 1
        assert exc_info.value.command == "npm ci --production=false"
        assert "missing lockfile" in exc_info.value.output
        assert runtime.exec_stream.call_count == 1
        runtime.disconnect_network.assert_not_called()
        assert len(_teardown_calls(runtime)) == 2

    def test_build_failure_reports_build_command(self, react_tree):
        runtime = make_runtime(exit_codes=(0, 2), outputs=[["ok\n"], ["Error: cannot find module\n"]])
        executor = SandboxBuildExecutor(runtime=runtime)

        with pytest.raises(BuildFailure) as exc_info:
            executor.build(str(react_tree), "vite")

        assert exc_info.value.phase == "build"
        assert "npm run build" in str(exc_info.value)
        runtime.remove.assert_called_once()
        runtime.stop.assert_called_once()

    def test_start_failure_still_tears_down(self, executor, runtime, react_tree):
        runtime.start.side_effect = InfrastructureError("daemon gone")
        with pytest.raises(InfrastructureError):
            executor.build(str(react_tree), "react")
        runtime.stop.assert_called_once()
        runtime.remove.assert_called_once()

    def test_create_failure_has_nothing_to_tear_down(self, executor, runtime, react_tree):
        runtime.create.side_effect = InfrastructureError("image missing")
        with pytest.raises(InfrastructureError):
            executor.build(str(react_tree), "react")
        runtime.stop.assert_not_called()
        runtime.remove.assert_not_called()

    def test_teardown_errors_do_not_mask_build_failure(self, react_tree):
        runtime = make_runtime(exit_codes=(1,), outputs=[["boom\n"]])
        runtime.stop.side_effect = InfrastructureError("already stopped")
        runtime.remove.side_effect = InfrastructureError("no such container")
        executor = SandboxBuildExecutor(runtime=runtime)

        with pytest.raises(BuildFailure):
            executor.build(str(react_tree), "react")
        runtime.remove.assert_called_once()

    def test_teardown_errors_swallowed_on_success(self, executor, runtime, react_tree):
        runtime.remove.side_effect = InfrastructureError("conflict")
        result = executor.build(str(react_tree), "react")
        assert result.framework == Framework.REACT

    def test_unknown_exit_code_is_treated_as_success(self, react_tree):
        runtime = make_runtime()
        runtime.exec_exit_code.side_effect = None
        runtime.exec_exit_code.return_value = None
        executor = SandboxBuildExecutor(runtime=runtime)
        executor.build(str(react_tree), "react")
        assert runtime.exec_stream.call_count == 2


# ---------------------------------------------------------------------------
# 4. Network gating
# ---------------------------------------------------------------------------
class TestNetworkDetach:

    def test_detach_is_forced_on_bridge(self, executor, runtime, react_tree):
        executor.build(str(react_tree), "react")
        runtime.disconnect_network.assert_called_once_with("container-123", "bridge", force=True)

    def test_detach_failure_does_not_prevent_build_phase(self, executor, runtime, react_tree):
        runtime.disconnect_network.side_effect = InfrastructureError("not connected")
        result = executor.build(str(react_tree), "react")
        assert runtime.exec_stream.call_count == 2
        assert "build" in result.phase_logs

    def test_detach_updates_session_state(self, executor, runtime):
        session = SandboxSession(container_id="c1", name="build-x", spec=SandboxSpec())
        executor.detach_network(session)
        assert session.network_state == NetworkState.DETACHED

    def test_failed_detach_leaves_state_attached(self, executor, runtime):
        runtime.disconnect_network.side_effect = RuntimeError("race")
        session = SandboxSession(container_id="c1", name="build-x", spec=SandboxSpec())
        executor.detach_network(session)
        assert session.network_state == NetworkState.ATTACHED


# ---------------------------------------------------------------------------
# 5. Timeouts
# ---------------------------------------------------------------------------
class TestTimeouts:

    def test_phase_timeout_raises_and_tears_down(self, react_tree):
        release = threading.Event()
        runtime = make_runtime()

        def _hang(container_id, command):
            release.wait(5)
            return "exec-0", iter([])

        runtime.exec_stream.side_effect = _hang
        executor = SandboxBuildExecutor(runtime=runtime, spec=SandboxSpec(phase_timeout_seconds=0.2))

        try:
            with pytest.raises(BuildTimeout) as exc_info:
                executor.build(str(react_tree), "react")
        finally:
            release.set()

        assert "exceeded the time limit" in str(exc_info.value)
        assert exc_info.value.phase == "install"
        runtime.disconnect_network.assert_not_called()
        runtime.stop.assert_called_once()
        runtime.remove.assert_called_once()

    def test_timeout_is_per_phase(self, react_tree):
        release = threading.Event()
        runtime = make_runtime()
        original = runtime.exec_stream.side_effect

        def _slow_build(container_id, command):
            if command == "npm run build":
                release.wait(5)
            return original(container_id, command)

        runtime.exec_stream.side_effect = _slow_build
        executor = SandboxBuildExecutor(runtime=runtime, spec=SandboxSpec(phase_timeout_seconds=0.2))

        try:
            with pytest.raises(BuildTimeout) as exc_info:
                executor.build(str(react_tree), "react")
        finally:
            release.set()

        assert exc_info.value.phase == "build"
        runtime.disconnect_network.assert_called_once()
        runtime.remove.assert_called_once()


# ---------------------------------------------------------------------------
# 6. Scoped session
# ---------------------------------------------------------------------------
class TestSandboxSession:

    def test_session_torn_down_on_exception(self, runtime, tmp_path):
        with pytest.raises(ValueError):
            with sandbox_session(runtime, str(tmp_path), SandboxSpec(), "build-t") as session:
                assert session.state == SessionState.CREATED
                raise ValueError("boom")
        assert session.state == SessionState.TORN_DOWN
        runtime.remove.assert_called_once_with("container-123", force=True, volumes=True)

    def test_session_torn_down_on_normal_exit(self, runtime, tmp_path):
        with sandbox_session(runtime, str(tmp_path), SandboxSpec(), "build-t") as session:
            pass
        assert session.state == SessionState.TORN_DOWN
        assert runtime.stop.call_count == 1

    def test_unremovable_container_logged_as_critical(self, runtime, caplog):
        runtime.stop.side_effect = InfrastructureError("daemon gone")
        runtime.remove.side_effect = InfrastructureError("daemon gone")
        session = SandboxSession(container_id="c1", name="build-x", spec=SandboxSpec())

        with caplog.at_level(logging.DEBUG, logger="app.executor.build_executor"):
            teardown_session(runtime, session)

        critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert len(critical) == 1
        assert "build-x" in critical[0].getMessage()
        assert session.state == SessionState.TORN_DOWN

    def test_remove_failure_after_stop_is_not_critical(self, runtime, caplog):
        runtime.remove.side_effect = InfrastructureError("conflict")
        session = SandboxSession(container_id="c1", name="build-x", spec=SandboxSpec())

        with caplog.at_level(logging.DEBUG, logger="app.executor.build_executor"):
            teardown_session(runtime, session)

        assert not [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert any(r.levelno == logging.ERROR for r in caplog.records)


# ---------------------------------------------------------------------------
# 7. Command output markers
# ---------------------------------------------------------------------------
def _marker_lines(caplog):
    return [r.getMessage() for r in caplog.records if r.getMessage().startswith("[")]


class TestOutputMarkers:

    def test_marker_set(self):
        for marker in ("error", "Error", "ERROR", "warn", "WARN", "success", "Success"):
            assert marker in LOG_MARKERS

    def test_only_marker_lines_are_logged(self, react_tree, caplog):
        runtime = make_runtime(outputs=[
            ["npm WARN deprecated left-pad\n", "added 5 packages\n"],
            ["compiling...\nbuild success\n"],
        ])
        executor = SandboxBuildExecutor(runtime=runtime)

        with caplog.at_level(logging.INFO, logger="app.executor.build_executor"):
            result = executor.build(str(react_tree), "react")

        assert _marker_lines(caplog) == [
            "[install] npm WARN deprecated left-pad",
            "[build] build success",
        ]
        assert result.phase_logs["install"] == "npm WARN deprecated left-pad\nadded 5 packages\n"
        assert result.phase_logs["build"] == "compiling...\nbuild success\n"

    def test_failure_output_keeps_unmarked_lines(self, react_tree, caplog):
        runtime = make_runtime(exit_codes=(0, 1), outputs=[
            ["added 5 packages\n"],
            ["compiling...\nError: boom\n", "Success rate: 0\nDone\n"],
        ])
        executor = SandboxBuildExecutor(runtime=runtime)

        with caplog.at_level(logging.INFO, logger="app.executor.build_executor"):
            with pytest.raises(BuildFailure) as exc_info:
                executor.build(str(react_tree), "react")

        assert _marker_lines(caplog) == ["[build] Error: boom", "[build] Success rate: 0"]
        assert exc_info.value.output == "compiling...\nError: boom\nSuccess rate: 0\nDone\n"


# ---------------------------------------------------------------------------
# 8. Log Excerpt
# ---------------------------------------------------------------------------
class TestLogExcerpt:

    def test_short_log_returned_as_is(self):
        log = "line1\nline2\nline3"
        assert create_log_excerpt(log) == log

    def test_long_log_truncated(self):
        full = "\n".join(f"line {i}" for i in range(200))
        excerpt = create_log_excerpt(full, head=5, tail=5)
        assert "line 0" in excerpt
        assert "line 199" in excerpt
        assert "omitted" in excerpt
