"""Unit tests for the notification collaborator."""

import pytest

from upgrader.services.notifier import (
    NotificationKind,
    NullNotifier,
    ProcessNotifier,
    build_notifier,
)


@pytest.mark.unit
class TestProcessNotifier:
    """Test ProcessNotifier in isolation."""

    @pytest.mark.asyncio
    async def test_notify_spawns_command(self, config, mock_process_manager):
        """Test the notifier command is launched with event arguments."""
        # Arrange
        notifier = ProcessNotifier(config.notifier_command, mock_process_manager)

        # Act
        await notifier.notify(NotificationKind.STAGED, "Restart to finish the upgrade")

        # Assert
        mock_process_manager.spawn.assert_awaited_once_with(
            [
                "C:\\Tools\\notify.exe",
                "/toast",
                "--event",
                "staged",
                "--message",
                "Restart to finish the upgrade",
            ]
        )

    @pytest.mark.asyncio
    async def test_notify_launch_failure_does_not_raise(self, config, mock_process_manager):
        """Notification failures never interrupt the upgrade."""
        mock_process_manager.spawn.side_effect = FileNotFoundError("notify.exe")
        notifier = ProcessNotifier(config.notifier_command, mock_process_manager)

        await notifier.notify(NotificationKind.FAILED, "boom")

        mock_process_manager.spawn.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_null_notifier(self):
        assert await NullNotifier().notify(NotificationKind.COMPLETED, "done") is None


@pytest.mark.unit
class TestBuildNotifier:
    def test_with_command(self, config, mock_process_manager):
        assert isinstance(build_notifier(config, mock_process_manager), ProcessNotifier)

    def test_without_command(self, config, mock_process_manager):
        notifier = build_notifier(
            config.model_copy(update={"notifier_command": None}), mock_process_manager
        )

        assert isinstance(notifier, NullNotifier)
