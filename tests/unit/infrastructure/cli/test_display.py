import logging

import pytest
from unittest.mock import MagicMock
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from steadyfetch.infrastructure.cli.display import ConsoleDisplay


@pytest.fixture
def mock_console():
    """Fixture to create a mock rich Console object."""
    return MagicMock(spec=Console)


@pytest.fixture
def console_display(mock_console: MagicMock):
    """Fixture to create a ConsoleDisplay instance with a mocked console."""
    return ConsoleDisplay(console=mock_console)


@pytest.fixture
def recording_display():
    """ConsoleDisplay writing to an in-memory recording console."""
    return ConsoleDisplay(console=Console(record=True, width=100, color_system=None))


def test_display_output(console_display: ConsoleDisplay, mock_console: MagicMock):
    """Test that display_output prints plain Text, not markup."""
    console_display.display_output("theme = '[bold]dark'")

    mock_console.print.assert_called_once()
    (printed,), _ = mock_console.print.call_args
    assert isinstance(printed, Text)
    assert printed.plain == "theme = '[bold]dark'"


@pytest.mark.parametrize(
    "method, title",
    [("display_error", "Error"), ("display_info", "Info"), ("display_warning", "Warning")],
)
def test_messages_are_wrapped_in_titled_panels(console_display: ConsoleDisplay, mock_console: MagicMock, method, title):
    getattr(console_display, method)("Something happened")

    (panel,), _ = mock_console.print.call_args
    assert isinstance(panel, Panel)
    assert title in str(panel.title)
    assert panel.renderable.plain == "Something happened"


def test_display_warning_is_logged(console_display: ConsoleDisplay, caplog):
    caplog.set_level(logging.WARNING)

    console_display.display_warning("Preference 'x' is not set.")

    assert "Preference 'x' is not set." in caplog.text


def test_display_table_renders_rows(recording_display: ConsoleDisplay):
    recording_display.display_table("Sync queue", ["Id", "Operation"], [[1, "save_race"], [2, None]])

    output = recording_display.console.export_text()
    assert "Sync queue" in output
    assert "save_race" in output
    assert "Operation" in output


def test_display_table_placeholder_for_empty_rows(recording_display: ConsoleDisplay):
    recording_display.display_table("Sync queue", ["Id", "Operation"], [])

    assert "none" in recording_display.console.export_text()


def test_display_table_builds_rich_table(console_display: ConsoleDisplay, mock_console: MagicMock):
    console_display.display_table("Cache tiers", ["Tier", "Bytes"], [["memory", 12]])

    (table,), _ = mock_console.print.call_args
    assert isinstance(table, Table)
    assert [column.header for column in table.columns] == ["Tier", "Bytes"]
    assert table.row_count == 1
