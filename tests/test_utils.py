"""Unit tests for utility functions (dappforge.utils).

Tests cover:
- run_command (success, failure, timeout, cwd, env, stdin, missing binary)
- sanitize_name
- load_json (objects only) and safe_join
- format_duration
- check_port_available
- wait_for_rpc (mock httpx)
- STAGE_COLORS and Rich output helpers
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from dappforge.errors import ValidationError
from dappforge.utils import (
    STAGE_COLORS,
    check_port_available,
    format_duration,
    load_json,
    print_error,
    print_stage_header,
    print_success,
    print_summary_table,
    print_warning,
    run_command,
    safe_join,
    sanitize_name,
    wait_for_rpc,
)

PY = sys.executable


# ---------------------------------------------------------------------------
# run_command
# ---------------------------------------------------------------------------


class TestRunCommand:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_successful_command(self):
        returncode, stdout, stderr = await run_command([PY, "-c", "print('hello')"])
        assert returncode == 0
        assert stdout == "hello"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_command(self):
        returncode, _, _ = await run_command([PY, "-c", "import sys; sys.exit(3)"])
        assert returncode == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_command_with_cwd(self, tmp_path: Path):
        returncode, stdout, _ = await run_command(
            [PY, "-c", "import os; print(os.getcwd())"], cwd=tmp_path
        )
        assert returncode == 0
        assert Path(stdout).resolve() == tmp_path.resolve()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_command_timeout(self):
        returncode, _, stderr = await run_command(
            [PY, "-c", "import time; time.sleep(10)"], timeout=1
        )
        assert returncode == -1
        assert "timed out" in stderr

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_env_merged_over_environ(self, monkeypatch):
        monkeypatch.setenv("DAPPFORGE_OUTER", "outer")
        returncode, stdout, _ = await run_command(
            [PY, "-c", "import os; print(os.environ['DAPPFORGE_OUTER'], os.environ['DAPPFORGE_KEY'])"],
            env={"DAPPFORGE_KEY": "secret"},
        )
        assert returncode == 0
        assert stdout == "outer secret"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_input_data_on_stdin(self):
        returncode, stdout, _ = await run_command(
            [PY, "-c", "import sys, json; print(json.load(sys.stdin)['language'])"],
            input_data=json.dumps({"language": "Solidity"}),
        )
        assert returncode == 0
        assert stdout == "Solidity"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_returns_stderr(self):
        _, _, stderr = await run_command([PY, "-c", "import sys; sys.stderr.write('error_msg\\n')"])
        assert stderr == "error_msg"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_binary(self):
        with pytest.raises(FileNotFoundError):
            await run_command(["nonexistent-binary-12345-xyz"])


# ---------------------------------------------------------------------------
# sanitize_name
# ---------------------------------------------------------------------------


class TestSanitizeName:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("My Token Sale", "my-token-sale"),
            ("  NFT (ERC721)  ", "nft-erc721"),
            ("snake_case", "snake-case"),
            ("a--b", "a-b"),
            ("v1.2", "v1-2"),
            ("", ""),
        ],
    )
    def test_sanitize(self, raw, expected):
        assert sanitize_name(raw) == expected


# ---------------------------------------------------------------------------
# load_json / safe_join
# ---------------------------------------------------------------------------


class TestLoadJson:
    @pytest.mark.unit
    def test_load_object(self, tmp_path: Path):
        path = tmp_path / "plan.json"
        path.write_text(json.dumps({"contract_name": "Counter", "features": []}))
        assert load_json(path) == {"contract_name": "Counter", "features": []}

    @pytest.mark.unit
    def test_non_object_rejected(self, tmp_path: Path):
        path = tmp_path / "list.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValidationError, match="JSON object"):
            load_json(path)

    @pytest.mark.unit
    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_json(tmp_path / "missing.json")

    @pytest.mark.unit
    def test_invalid_json(self, tmp_path: Path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(json.JSONDecodeError):
            load_json(path)


class TestSafeJoin:
    @pytest.mark.unit
    def test_nested_relative(self, tmp_path: Path):
        assert safe_join(tmp_path, "app/lib/page.tsx") == tmp_path / "app" / "lib" / "page.tsx"

    @pytest.mark.unit
    @pytest.mark.parametrize("relative", ["../escape.sol", "a/../../b", "/etc/passwd"])
    def test_escape_refused(self, tmp_path: Path, relative):
        with pytest.raises(ValidationError, match="outside the project"):
            safe_join(tmp_path, relative)


# ---------------------------------------------------------------------------
# format_duration
# ---------------------------------------------------------------------------


class TestFormatDuration:
    @pytest.mark.unit
    def test_seconds_only(self):
        assert format_duration(3.7) == "3.7s"

    @pytest.mark.unit
    def test_minutes_and_seconds(self):
        assert format_duration(65.2) == "1m 5s"

    @pytest.mark.unit
    def test_hours_minutes_seconds(self):
        assert format_duration(3661.0) == "1h 1m 1s"

    @pytest.mark.unit
    def test_negative(self):
        assert format_duration(-5.0) == "0.0s"


# ---------------------------------------------------------------------------
# check_port_available
# ---------------------------------------------------------------------------


class TestCheckPortAvailable:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_returns_bool(self):
        assert isinstance(await check_port_available(59999), bool)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_listening_port_is_busy(self):
        import socket

        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.bind(("127.0.0.1", 0))
        server.listen(1)
        try:
            port = server.getsockname()[1]
            assert await check_port_available(port) is False
        finally:
            server.close()


# ---------------------------------------------------------------------------
# wait_for_rpc
# ---------------------------------------------------------------------------


def _rpc_client(post: AsyncMock) -> AsyncMock:
    mock_client = AsyncMock()
    mock_client.post = post
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


def _rpc_response(status: int = 200, body: dict | None = None) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.json.return_value = body if body is not None else {"jsonrpc": "2.0", "id": 1, "result": "0x7a69"}
    return response


class TestWaitForRpc:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_immediate_success(self):
        post = AsyncMock(return_value=_rpc_response())
        with patch("httpx.AsyncClient", return_value=_rpc_client(post)):
            result = await wait_for_rpc("http://127.0.0.1:23100", timeout=5, interval=0.01)

        assert result is True
        payload = post.call_args.kwargs["json"]
        assert payload["method"] == "eth_chainId"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_eventual_success(self):
        post = AsyncMock(side_effect=[httpx.ConnectError("refused"), _rpc_response(503), _rpc_response()])
        with patch("httpx.AsyncClient", return_value=_rpc_client(post)):
            result = await wait_for_rpc("http://127.0.0.1:23100", timeout=5, interval=0.01)
        assert result is True
        assert post.await_count == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_error_body_keeps_trying(self):
        post = AsyncMock(side_effect=[_rpc_response(body={"error": {"code": -32601}}), _rpc_response()])
        with patch("httpx.AsyncClient", return_value=_rpc_client(post)):
            assert await wait_for_rpc("http://127.0.0.1:23100", timeout=5, interval=0.01) is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_returns_false(self):
        post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient", return_value=_rpc_client(post)):
            result = await wait_for_rpc("http://127.0.0.1:23100", timeout=0.2, interval=0.05)
        assert result is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_process_exit_stops_early(self):
        process = MagicMock()
        process.returncode = 1
        post = AsyncMock(return_value=_rpc_response())
        with patch("httpx.AsyncClient", return_value=_rpc_client(post)):
            result = await wait_for_rpc("http://127.0.0.1:23100", timeout=5, interval=0.01, process=process)
        assert result is False
        post.assert_not_awaited()


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------


class TestOutputHelpers:
    @pytest.mark.unit
    def test_stage_colors_cover_pipeline(self):
        from dappforge.pipeline import STAGES

        assert set(STAGES) <= set(STAGE_COLORS)

    @pytest.mark.unit
    def test_helpers_do_not_raise(self):
        print_stage_header(1, "generate")
        print_stage_header(9, "unknown")
        print_summary_table({"status": "success", "contracts": 1}, title="Build")
        print_success("ok")
        print_error("bad")
        print_warning("careful")
