import pytest

from wg_overlay.errors import NotInstalled
from wg_overlay.firewall import FirewallRuleSet, apply_live, merge_persisted
from wg_overlay.uninstall import UninstallCoordinator

SSH_RULE = "-A INPUT -p tcp -m tcp --dport 22 -j ACCEPT"
RULES_V4 = "*filter\n:INPUT ACCEPT [0:0]\n" + SSH_RULE + "\nCOMMIT\n"


def test_refuses_without_marker(paths, make_backend, service):
    paths.root.mkdir(parents=True)
    paths.config_file.write_text("[Interface]\nPrivateKey = foreign=\n")
    paths.rules_file.write_text(RULES_V4 + "-A FORWARD -m comment --comment WG_SCRIPT_MANAGED -j ACCEPT\n")
    backend = make_backend(filter_rules=[SSH_RULE, "-A INPUT -i wg0 -m comment --comment WG_SCRIPT_MANAGED -j ACCEPT"])
    before_rules = dict((k, list(v)) for k, v in backend.rules.items())
    before_file = paths.rules_file.read_text()

    with pytest.raises(NotInstalled):
        UninstallCoordinator(paths, backend, service).run()

    assert backend.rules == before_rules
    assert paths.config_file.read_text() == "[Interface]\nPrivateKey = foreign=\n"
    assert paths.rules_file.read_text() == before_file
    assert service.calls == []


def _hooks_up(backend):
    apply_live(backend, FirewallRuleSet("eth0", 51820).activation_rules())


def test_full_uninstall(engine, paths, make_backend, service):
    paths.rules_file.write_text(RULES_V4)
    engine.install("eth0", 51820)
    engine.add_client("alice", "203.0.113.7")
    engine.backend.rules["filter"].append(SSH_RULE)
    _hooks_up(engine.backend)
    assert paths.rules_file.read_text() != RULES_V4

    report = UninstallCoordinator(paths, engine.backend, service).run()

    assert report.live_rules_removed == 5
    assert engine.backend.rules == {"filter": [SSH_RULE], "nat": []}
    assert paths.rules_file.read_text() == RULES_V4
    assert report.persisted_file_changed is True
    assert not paths.root.exists()
    assert report.root_removed is True
    assert service.calls[-2:] == ["stop", "disable"]


def test_foreign_files_survive(engine, paths):
    engine.install("eth0", 51820)
    (paths.root / "wg1.conf").write_text("[Interface]\n")

    report = engine.uninstall()

    assert (paths.root / "wg1.conf").read_text() == "[Interface]\n"
    assert not paths.marker.exists()
    assert not paths.config_file.exists()
    assert not paths.clients_dir.exists()
    assert report.root_removed is False


def test_service_failure_does_not_block(engine, paths):
    engine.install("eth0", 51820)
    engine.service.fail = {"stop", "disable"}

    report = engine.uninstall()

    assert len(report.warnings) == 2
    assert not paths.marker.exists()


def test_retry_after_interruption(engine, paths):
    engine.install("eth0", 51820)
    _hooks_up(engine.backend)
    # première exécution interrompue : règles et clés déjà retirées, marqueur encore là
    engine.backend.rules = {"filter": [], "nat": []}
    paths.private_key.unlink()
    paths.config_file.unlink()
    assert paths.marker.exists()

    report = engine.uninstall()

    assert report.live_rules_removed == 0
    assert not paths.root.exists()


def test_second_run_is_not_installed(engine):
    engine.install("eth0", 51820)
    engine.uninstall()
    with pytest.raises(NotInstalled):
        engine.uninstall()


def test_marker_cleared_last(engine, paths, monkeypatch):
    engine.install("eth0", 51820)

    def boom(backend, tag="WG_SCRIPT_MANAGED"):
        raise RuntimeError("crash")

    monkeypatch.setattr("wg_overlay.uninstall.remove_tagged_live", boom)
    with pytest.raises(RuntimeError):
        engine.uninstall()
    assert paths.marker.exists()
    assert paths.config_file.exists()


def test_merge_then_uninstall_leaves_rules_file_identical(engine, paths):
    paths.rules_file.write_text(RULES_V4)
    engine.install("eth0", 51820)
    assert merge_persisted(paths.rules_file.read_text(), FirewallRuleSet("eth0", 51820).activation_rules()) == (
        paths.rules_file.read_text()
    )
    engine.uninstall()
    assert paths.rules_file.read_text() == RULES_V4


def test_uninstall_restores_rules_file_without_filter_section(engine, paths):
    nat_only = "*nat\n:POSTROUTING ACCEPT [0:0]\nCOMMIT\n"
    paths.rules_file.write_text(nat_only)
    engine.install("eth0", 51820)
    assert "*filter" in paths.rules_file.read_text()

    engine.uninstall()
    assert paths.rules_file.read_text() == nat_only
