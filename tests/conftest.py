import pytest

from wg_overlay.config import Paths
from wg_overlay.engine import OverlayEngine
from wg_overlay.errors import ExternalToolError
from wg_overlay.guard import InstallationGuard
from wg_overlay.init_server import ServerConfigStore
from wg_overlay.models import KeyPair
from wg_overlay.peers import PeerRegistry


DEFAULT_POLICIES = {
    "filter": ["-P INPUT ACCEPT", "-P FORWARD ACCEPT", "-P OUTPUT ACCEPT"],
    "nat": ["-P PREROUTING ACCEPT", "-P INPUT ACCEPT", "-P OUTPUT ACCEPT", "-P POSTROUTING ACCEPT"],
}


class FakeBackend:
    """Table iptables en mémoire : lignes au format 'iptables -S'."""

    def __init__(self, filter_rules=None, nat_rules=None):
        self.rules = {"filter": list(filter_rules or []), "nat": list(nat_rules or [])}
        self.restored = []

    def check(self, rule):
        return rule.save_line() in self.rules[rule.table]

    def add(self, rule):
        if rule.insert_first:
            self.rules[rule.table].insert(0, rule.save_line())
        else:
            self.rules[rule.table].append(rule.save_line())

    def delete(self, rule):
        self.delete_spec(rule.table, rule.chain, rule.spec())

    def delete_spec(self, table, chain, spec):
        line = " ".join(["-A", chain, *spec])
        if line not in self.rules[table]:
            raise ExternalToolError(["iptables", "-D", chain, *spec], 1, "Bad rule")
        self.rules[table].remove(line)

    def list_rules(self, table):
        return DEFAULT_POLICIES[table] + self.rules[table]

    def restore(self, text):
        self.restored.append(text)

    def count(self):
        return len(self.rules["filter"]) + len(self.rules["nat"])


class FakeKeyGenerator:
    def __init__(self):
        self.calls = 0

    def generate(self):
        self.calls += 1
        return KeyPair(private_key=f"priv{self.calls}AAAA=", public_key=f"pub{self.calls}BBBB=")


class FakeService:
    def __init__(self, fail=()):
        self.calls = []
        self.fail = set(fail)

    def _do(self, action):
        self.calls.append(action)
        if action in self.fail:
            raise ExternalToolError(["systemctl", action, "wg-quick@wg0"], 5, "unit not loaded")

    def enable(self):
        self._do("enable")

    def start(self):
        self._do("start")

    def restart(self):
        self._do("restart")

    def stop(self):
        self._do("stop")

    def disable(self):
        self._do("disable")


@pytest.fixture
def paths(tmp_path):
    return Paths.from_root(tmp_path / "wireguard", tmp_path / "rules.v4")


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def make_backend():
    return FakeBackend


@pytest.fixture
def keygen():
    return FakeKeyGenerator()


@pytest.fixture
def service():
    return FakeService()


@pytest.fixture
def engine(paths, backend, keygen, service):
    return OverlayEngine(
        paths=paths,
        backend=backend,
        keygen=keygen,
        service=service,
        resolver=lambda: "203.0.113.7",
    )


@pytest.fixture
def store(paths):
    """Serveur créé, sans peers, sans passer par l'engine."""
    s = ServerConfigStore(paths)
    approval = InstallationGuard(paths).approve()
    s.create("eth0", 51820, KeyPair("serverpriv=", "serverpub="), approval)
    return s


@pytest.fixture
def registry(store):
    return PeerRegistry(store)
