import pytest

from wg_overlay.errors import FirewallConflict, ForeignInstallation, PreconditionFailed
from wg_overlay.guard import IGNORE_FIREWALL_ENV, GuardStatus, InstallationGuard

SSH_RULE = "-A INPUT -p tcp -m tcp --dport 22 -j ACCEPT"


@pytest.fixture(autouse=True)
def no_env_override(monkeypatch):
    monkeypatch.delenv(IGNORE_FIREWALL_ENV, raising=False)


def test_clean_host(paths):
    assert InstallationGuard(paths).check() is GuardStatus.CLEAN


def test_clean_when_dir_exists_but_empty(paths):
    paths.root.mkdir(parents=True)
    assert InstallationGuard(paths).check() is GuardStatus.CLEAN


def test_foreign_config(paths):
    paths.root.mkdir(parents=True)
    paths.config_file.write_text("[Interface]\n")
    guard = InstallationGuard(paths)

    assert guard.check() is GuardStatus.FOREIGN_CONFLICT
    with pytest.raises(ForeignInstallation):
        guard.approve()
    assert paths.config_file.read_text() == "[Interface]\n"


def test_foreign_key_material(paths):
    paths.root.mkdir(parents=True)
    paths.private_key.write_text("key\n")
    assert InstallationGuard(paths).check() is GuardStatus.FOREIGN_CONFLICT


def test_foreign_install_is_precondition_failure():
    assert issubclass(ForeignInstallation, PreconditionFailed)
    assert issubclass(FirewallConflict, PreconditionFailed)


def test_owned_install(paths):
    paths.root.mkdir(parents=True)
    paths.config_file.write_text("[Interface]\n")
    paths.marker.touch()
    assert InstallationGuard(paths).check() is GuardStatus.OWNED_INSTALL


def test_interrupted_install_is_owned(paths):
    paths.root.mkdir(parents=True)
    paths.private_key.write_text("key\n")
    paths.pending_marker.touch()
    assert InstallationGuard(paths).check() is GuardStatus.OWNED_INSTALL


def test_approve_clean(paths, backend):
    approval = InstallationGuard(paths, backend).approve()
    assert approval.status is GuardStatus.CLEAN
    assert approval.root == str(paths.root)


def test_foreign_rules_need_confirmation(paths, make_backend):
    backend = make_backend(filter_rules=[SSH_RULE])
    guard = InstallationGuard(paths, backend)

    with pytest.raises(FirewallConflict) as exc:
        guard.approve()
    assert exc.value.rules == [SSH_RULE]

    guard.confirm_firewall_override()
    assert guard.approve().status is GuardStatus.CLEAN


def test_override_is_not_persisted(paths, make_backend):
    backend = make_backend(filter_rules=[SSH_RULE])
    InstallationGuard(paths, backend).confirm_firewall_override()

    with pytest.raises(FirewallConflict):
        InstallationGuard(paths, backend).approve()


def test_env_override(paths, make_backend, monkeypatch):
    monkeypatch.setenv(IGNORE_FIREWALL_ENV, "1")
    backend = make_backend(filter_rules=[SSH_RULE])
    assert InstallationGuard(paths, backend).approve().status is GuardStatus.CLEAN


def test_firewall_check_skipped_for_owned_install(paths, make_backend):
    paths.root.mkdir(parents=True)
    paths.config_file.write_text("[Interface]\n")
    paths.marker.touch()
    backend = make_backend(filter_rules=[SSH_RULE])

    assert InstallationGuard(paths, backend).approve().status is GuardStatus.OWNED_INSTALL


def test_no_backend_skips_rule_scan(paths):
    assert InstallationGuard(paths).foreign_rules() == []
