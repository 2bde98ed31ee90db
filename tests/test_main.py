"""Tests for the command-line entry point and exit codes."""
from unittest.mock import patch

import pytest
from loguru import logger

from pve_ctid_changer import main as main_module
from pve_ctid_changer.domain import EntityKind, EntityStatus, ManagedEntity
from pve_ctid_changer.exceptions import CommandError, PrivilegeError

GIB = 1024**3


@pytest.fixture(autouse=True)
def environment_ok():
    with patch("pve_ctid_changer.main.check_environment") as mock_check:
        yield mock_check
    logger.remove()


@pytest.fixture
def log_file(tmp_path):
    return tmp_path / "logs" / "change_ct_id.log"


def run_main(platform, log_file, *extra):
    return main_module.main(
        ["105", "150", "--log-file", str(log_file), "--no-dialog", *extra],
        platform=platform,
    )


class TestArgumentParsing:
    """Tests for build_parser() and build_config()."""

    def test_defaults(self):
        args = main_module.build_parser().parse_args([])

        assert args.current_id is None
        assert args.new_id is None
        assert not args.verbose

    def test_flags_reach_config(self, tmp_path):
        """Test CLI flags override settings."""
        args = main_module.build_parser().parse_args(
            ["105", "150", "--verbose", "--dry-run", "--remove-backup", "--no-dialog",
             "--log-file", str(tmp_path / "x.log")]
        )

        config = main_module.build_config(args)

        assert config.verbose and config.dry_run
        assert config.keep_backup is False
        assert config.use_dialog is False
        assert config.interactive is False
        assert config.log_file == tmp_path / "x.log"

    def test_missing_new_id_is_interactive(self):
        args = main_module.build_parser().parse_args(["105"])

        assert main_module.build_config(args).interactive is True


class TestExitCodes:
    """Tests for main() exit codes."""

    def test_successful_scenario_exits_zero(self, scenario_platform, free_bytes, log_file):
        """Test the 105 -> 150 scenario exits 0 and logs in order."""
        assert run_main(scenario_platform, log_file) == 0

        text = log_file.read_text()
        assert text.index("[VERIFIED]") < text.index("Destroying old CT 105")
        assert list(scenario_platform.entities) == [150]

    def test_log_file_is_appended(self, scenario_platform, free_bytes, log_file):
        """Test an existing log file is never truncated."""
        log_file.parent.mkdir(parents=True)
        log_file.write_text("previous run\n")

        run_main(scenario_platform, log_file)

        assert log_file.read_text().startswith("previous run\n")

    def test_restore_failure_exits_two(self, scenario_platform, free_bytes, log_file):
        """Test a restore failure exits 2 and keeps the original."""
        scenario_platform.failures["restore"] = CommandError(["pct", "restore"], 255)

        assert run_main(scenario_platform, log_file) == 2

        assert 105 in scenario_platform.entities
        assert "destroy" not in scenario_platform.operations()
        text = log_file.read_text()
        assert "Step 'restore' failed" in text
        assert "has not been destroyed" in text

    def test_running_new_id_exits_one(self, scenario_platform, free_bytes, log_file):
        """Test a taken new ID exits 1 with no stop or backup."""
        scenario_platform.add_entity(
            ManagedEntity(entity_id=150, kind=EntityKind.CONTAINER),
            {"rootfs": "local:150/vm-150-disk-0.raw"},
            status=EntityStatus.RUNNING,
        )

        assert run_main(scenario_platform, log_file) == 1

        assert "stop" not in scenario_platform.operations()
        assert "create_archive" not in scenario_platform.operations()

    def test_insufficient_space_exits_two(self, scenario_platform, free_bytes, log_file):
        """Test the capacity gate exits 2 before any stop."""
        free_bytes.return_value = GIB

        assert run_main(scenario_platform, log_file) == 2

        assert "stop" not in scenario_platform.operations()

    def test_destroy_failure_exits_two_after_success(
        self, scenario_platform, free_bytes, log_file
    ):
        """Test cleanup failure is a warning logged after success, exit 2."""
        scenario_platform.failures["destroy"] = CommandError(["pct", "destroy"], 1)

        assert run_main(scenario_platform, log_file) == 2

        text = log_file.read_text()
        assert text.index("is now running as 150") < text.index("Could not destroy old CT 105")
        assert 150 in scenario_platform.entities

    def test_dry_run_exits_zero_without_changes(self, scenario_platform, free_bytes, log_file):
        assert run_main(scenario_platform, log_file, "--dry-run") == 0

        assert "stop" not in scenario_platform.operations()
        assert 105 in scenario_platform.entities

    def test_privilege_error_exits_one(self, scenario_platform, log_file, environment_ok):
        environment_ok.side_effect = PrivilegeError()

        assert run_main(scenario_platform, log_file) == 1

    def test_interrupt_during_selection_exits_one(self, scenario_platform, log_file):
        with patch(
            "pve_ctid_changer.main.EntitySelector.select", side_effect=KeyboardInterrupt
        ):
            assert run_main(scenario_platform, log_file) == 1

    def test_storage_query_failure_exits_two(self, scenario_platform, free_bytes, log_file):
        """Test a failing pvesm status is reported and exits 2."""
        scenario_platform.failures["list_storages"] = CommandError(
            ["pvesm", "status"], 255, stderr="ipcc_send_rec failed"
        )

        assert run_main(scenario_platform, log_file) == 2

        assert "stop" not in scenario_platform.operations()
        text = log_file.read_text()
        assert "Step 'storage' failed" in text
        assert "ipcc_send_rec failed" in text

    def test_untranslated_command_error_exits_two(self, scenario_platform, log_file):
        """Test any command failure reaching main() is reported, not raised."""
        with patch(
            "pve_ctid_changer.main.EntitySelector.select",
            side_effect=CommandError(["qm", "list"], 1, stderr="cluster not ready"),
        ):
            assert run_main(scenario_platform, log_file) == 2

        assert "cluster not ready" in log_file.read_text()
