"""
Tests for the typer CLI surface that needs no live node.
"""

import pytest
from typer.testing import CliRunner

from mycelial_sync.client.controller import SyncController
from mycelial_sync.runner import COLLECTIONS, app, wait_open
from tests.conftest import FakeConnector, make_loader

runner = CliRunner()


def test_help_lists_commands():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for command in ("sandbox", "watch", "snapshot", "chat", "create", "cancel", "retry"):
        assert command in result.output


def test_snapshot_rejects_unknown_collection():
    result = runner.invoke(app, ["snapshot", "gadgets"])
    assert result.exit_code == 1
    assert "Unknown collection gadgets" in result.output


def test_every_collection_has_a_renderer():
    assert set(COLLECTIONS) == {"peers", "nodes", "workloads"}


@pytest.mark.asyncio
async def test_wait_open_holds_until_identity_is_hydrated(test_settings):
    controller = SyncController(
        test_settings,
        p2p_loader=make_loader({("GET", "/api/info"): {"peer_id": "12D3KooWlocal"}, ("GET", "/api/peers"): []}),
        orchestrator_loader=make_loader({}),
        connector=FakeConnector(),
    )

    opened = await wait_open(controller, "p2p", 1.0, ready=lambda: controller.local_peer_id is not None)
    message = await controller.send_chat("hi")

    assert opened
    assert message.from_name == "Peer-12D3KooW (you)"
    await controller.aclose()
