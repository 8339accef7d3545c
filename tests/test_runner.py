"""End-to-end tests for the public entry points (real session host processes)."""

import asyncio
import os
from pathlib import Path
from unittest.mock import patch

from session_runner.engine.fetcher import PackageFetcher
from session_runner.models import ExecutionTrust, PackageSpec
from session_runner.runner import SessionRunner
from tests.conftest import unreachable_transport

GREETER = PackageSpec(name="greeter", import_version="1.0.0")


def _runner(base_dir: Path, fetcher: PackageFetcher = None, required=None, **kwargs) -> SessionRunner:
    return SessionRunner(
        fetcher=fetcher or PackageFetcher(host="registry.test"),
        base_dir=base_dir,
        executor_options={"bootstrap": None, "meta": None, "required": required or []},
        **kwargs,
    )


def _leftovers(base_dir: Path) -> list:
    return list(base_dir.iterdir())


class TestRunScript:
    def test_return_value(self, base_dir: Path) -> None:
        result = asyncio.run(_runner(base_dir).run_script("return 1 + 1"))
        assert result.outputs == ["2"]
        assert result.error_messages == []
        assert result.failed is False
        assert result.session_id
        assert _leftovers(base_dir) == []

    def test_error_is_collected_and_directory_removed(self, base_dir: Path) -> None:
        result = asyncio.run(_runner(base_dir).run_script("raise RuntimeError('boom')"))
        assert result.failed is True
        assert any("boom" in m for m in result.error_messages)
        assert _leftovers(base_dir) == []

    def test_directory_exists_during_session_only(self, base_dir: Path) -> None:
        script = "import os\nreturn f'{SESSION_DIR}|{os.path.isdir(SESSION_DIR)}'"
        result = asyncio.run(_runner(base_dir).run_script(script))
        session_dir, existed = result.outputs[0].split("|")
        assert existed == "True"
        assert Path(session_dir) == base_dir.resolve() / result.session_id
        assert not Path(session_dir).exists()

    def test_environment_overlay(self, base_dir: Path) -> None:
        script = "return env['GREETING'] + ' ' + env['PYTHONPATH']"
        result = asyncio.run(_runner(base_dir).run_script(script, {"GREETING": "hi"}))
        assert result.outputs == [f"hi {base_dir.resolve() / result.session_id}"]

    def test_provisioned_module_is_imported(self, base_dir: Path, greeter_fetcher: PackageFetcher) -> None:
        runner = _runner(base_dir, fetcher=greeter_fetcher, required=[GREETER])
        result = asyncio.run(runner.run_script("return greeter.greet('world')"))
        assert result.failed is False, result.error_messages
        assert result.outputs == ["hello world"]
        assert _leftovers(base_dir) == []

    def test_env_exposes_only_session_overlay(self, base_dir: Path) -> None:
        with patch.dict(os.environ, {"SESSION_RUNNER_API_KEY": "secret"}):
            result = asyncio.run(
                _runner(base_dir).run_script("return sorted(k for k in env if k != 'PYTHONPATH')", {"TAG": "x"})
            )
        assert result.outputs == ["['TAG']"]

    def test_raw_child_output_does_not_merge_with_records(self, base_dir: Path) -> None:
        script = "import subprocess\nsubprocess.run(['printf', 'hi'])\nreturn 2"
        result = asyncio.run(_runner(base_dir).run_script(script))
        assert result.failed is False, result.error_messages
        assert len(result.outputs) == 2
        assert result.outputs[0].startswith("CompletedProcess(")
        assert result.outputs[1] == "2"
        assert not any("hi" in text for text in result.streams.get("information", []))

    def test_large_unterminated_raw_write(self, base_dir: Path) -> None:
        script = "import os\n_ = os.write(1, b'x' * (17 * 1024 * 1024))\nreturn 2"
        result = asyncio.run(_runner(base_dir).run_script(script))
        assert result.failed is False, result.error_messages
        assert result.outputs == ["2"]

    def test_oversized_record_fails_the_run(self, base_dir: Path) -> None:
        with patch("session_runner.engine.executor.STREAM_LIMIT", 1024):
            result = asyncio.run(_runner(base_dir).run_script("return 'x' * 5000"))
        assert result.failed is True
        assert "larger than 1024 bytes" in result.error_messages[-1]
        assert _leftovers(base_dir) == []

    def test_unreachable_registry(self, base_dir: Path) -> None:
        fetcher = PackageFetcher(host="nowhere.invalid", transport=unreachable_transport())
        runner = _runner(base_dir, fetcher=fetcher, required=[GREETER])
        result = asyncio.run(runner.run_script("return 1"))
        assert result.failed is True
        assert result.outputs == []
        assert result.error_messages[-1].startswith("Network error:")
        assert _leftovers(base_dir) == []

    def test_restricted_trust(self, base_dir: Path) -> None:
        runner = _runner(base_dir, trust=ExecutionTrust.RESTRICTED)
        result = asyncio.run(runner.run_script("return 1"))
        assert result.failed is True
        assert result.outputs == []
        assert "restricted trust" in result.error_messages[0]

    def test_side_channels_in_streams(self, base_dir: Path) -> None:
        result = asyncio.run(_runner(base_dir).run_script("print('note')\nwrite_warning('w')\nreturn 0"))
        assert result.outputs == ["0"]
        assert result.streams["information"] == ["note"]
        assert result.streams["warning"] == ["w"]
        assert result.failed is False

    def test_cleanup_failure_does_not_change_result(self, base_dir: Path) -> None:
        with patch("session_runner.engine.reaper.shutil.rmtree", side_effect=PermissionError("locked")):
            result = asyncio.run(_runner(base_dir).run_script("return 1 + 1"))
        assert result.outputs == ["2"]
        assert result.error_messages == []
        assert result.failed is False
        assert (base_dir / result.session_id).exists()

    def test_concurrent_sessions_are_isolated(self, base_dir: Path) -> None:
        runner = _runner(base_dir)
        script = (
            "import os\n"
            "with open('marker.txt', 'w') as f:\n"
            "    f.write(env['TAG'])\n"
            "return f\"{SESSION_DIR}|{sorted(os.listdir(SESSION_DIR))}\""
        )

        async def scenario():
            return await asyncio.gather(
                runner.run_script(script, {"TAG": "a"}),
                runner.run_script(script, {"TAG": "b"}),
            )

        first, second = asyncio.run(scenario())
        dir_a, listing_a = first.outputs[0].split("|")
        dir_b, listing_b = second.outputs[0].split("|")
        assert dir_a != dir_b
        assert first.session_id != second.session_id
        assert listing_a == listing_b == "['marker.txt']"
        assert _leftovers(base_dir) == []

    def test_repeated_runs_do_not_share_state(self, base_dir: Path) -> None:
        runner = _runner(base_dir)
        first = asyncio.run(runner.run_script("leaked = env['RUN']\nreturn leaked", {"RUN": "one"}))
        second = asyncio.run(runner.run_script("return 'leaked' in globals()", {"RUN": "two"}))
        assert first.outputs == ["one"]
        assert second.outputs == ["False"]
        assert first.session_id != second.session_id


class TestRunScriptFile:
    def test_runs_relative_to_file(self, base_dir: Path, tmp_path: Path) -> None:
        scripts = tmp_path / "scripts"
        scripts.mkdir()
        (scripts / "data.txt").write_text("payload")
        script = scripts / "job.py"
        script.write_text("with open('data.txt') as f:\n    return f.read()\n")
        result = asyncio.run(_runner(base_dir).run_script_file(script))
        assert result.outputs == ["payload"]
        assert result.failed is False
        assert _leftovers(base_dir) == []

    def test_missing_file(self, base_dir: Path, tmp_path: Path) -> None:
        result = asyncio.run(_runner(base_dir).run_script_file(tmp_path / "missing.py"))
        assert result.failed is True
        assert "Cannot read script file" in result.error_messages[0]
        assert _leftovers(base_dir) == []


class TestDefaults:
    def test_uses_shared_aggregator(self) -> None:
        from session_runner.engine.aggregator import aggregator
        assert SessionRunner().aggregator is aggregator
