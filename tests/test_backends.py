"""Tests for the nftables and iptables backends. No firewall command is actually run."""

import subprocess

import pytest

import dockwall.backends
import dockwall.backends.iptables
import dockwall.backends.nftables
from dockwall.backends import get_backend, run_command
from dockwall.backends.iptables import IptablesBackend, jump_marker
from dockwall.backends.nftables import NftablesBackend, render_rule
from dockwall.errors import BackendError, ConfigurationError
from dockwall.rules import ChainSetup, Rule

SETUPS = [
    ChainSetup("filter", "DOCKWALL-INPUT", "input", "accept", "DOCKWALL-MARKER:defaults"),
    ChainSetup("filter", "DOCKWALL-FORWARD", "forward", "drop", "DOCKWALL-MARKER:defaults"),
    ChainSetup("nat", "DOCKWALL-PREROUTING", "prerouting", "accept", "DOCKWALL-MARKER:defaults"),
]
ESTABLISHED = Rule.build("filter", "DOCKWALL-FORWARD", "accept", "DOCKWALL-MARKER:defaults",
                         ct_states=("established", "related"))
TO_HOST = Rule.build("filter", "DOCKWALL-INPUT", "drop", "DOCKWALL-MARKER:container_to_host;default",
                     in_interface="br-be0be0be0be0")
DNAT_V4 = Rule.build("nat", "DOCKWALL-PREROUTING", "dnat", "DOCKWALL-MARKER:wider_world_to_container;web;*",
                     in_interface="eth0", protocol="tcp", destination_port=8080, destination_local=True,
                     dnat_to="172.20.0.3:80")
FORWARD_V6 = Rule.build("filter", "DOCKWALL-FORWARD", "accept", "DOCKWALL-MARKER:container_to_container;v6",
                        source="fd00::2", destination="fd00::3", protocol="tcp", destination_port="8000-8100")
RULES = SETUPS + [ESTABLISHED, TO_HOST, DNAT_V4, FORWARD_V6]


class _Recorder:
    def __init__(self, outputs=None):
        self.calls = []
        self.outputs = outputs or {}

    def __call__(self, cmd, input=None):
        self.calls.append((cmd, input))
        return self.outputs.get(tuple(cmd), "")


class TestRunCommand:
    def test_failure_raises_backend_error(self, monkeypatch):
        def fail(cmd, **kwargs):
            raise subprocess.CalledProcessError(1, cmd, stderr=b"Error: syntax error")
        monkeypatch.setattr(subprocess, "run", fail)
        with pytest.raises(BackendError) as exc:
            run_command(["nft", "-f", "-"], input="x")
        assert exc.value.stderr == "Error: syntax error"
        assert exc.value.command == ["nft", "-f", "-"]

    def test_missing_binary(self, monkeypatch):
        def missing(cmd, **kwargs):
            raise FileNotFoundError(cmd[0])
        monkeypatch.setattr(subprocess, "run", missing)
        with pytest.raises(BackendError, match="not found"):
            run_command(["nft", "list", "ruleset"])


class TestGetBackend:
    def test_known(self):
        assert isinstance(get_backend("nftables", table="fw"), NftablesBackend)
        assert get_backend("nftables", table="fw").table == "fw"
        assert isinstance(get_backend("iptables"), IptablesBackend)

    def test_unknown(self):
        with pytest.raises(ConfigurationError):
            get_backend("pf")


class TestNftables:
    def test_render_rule(self):
        assert render_rule(TO_HOST) == \
            'iifname "br-be0be0be0be0" drop comment "DOCKWALL-MARKER:container_to_host;default"'
        assert render_rule(DNAT_V4) == (
            'iifname "eth0" fib daddr type local tcp dport 8080 dnat ip to 172.20.0.3:80 '
            'comment "DOCKWALL-MARKER:wider_world_to_container;web;*"')
        assert render_rule(FORWARD_V6).startswith("ip6 saddr fd00::2 ip6 daddr fd00::3 tcp dport 8000-8100 accept")

    def test_render_ipv6_dnat(self):
        rule = Rule.build("nat", "P", "dnat", "M", dnat_to="[fd00::3]:80")
        assert "dnat ip6 to [fd00::3]:80" in render_rule(rule)

    def test_render_table(self):
        spec = NftablesBackend().render(RULES)
        assert spec.startswith("table inet dockwall {\n")
        assert "type filter hook forward priority 0; policy drop;" in spec
        assert "type nat hook prerouting priority -100; policy accept;" in spec
        for rule in RULES:
            assert f'comment "{rule.marker}"' in spec or isinstance(rule, ChainSetup)
        # Rules stay in their chain, in order.
        forward = spec.split("chain DOCKWALL-FORWARD")[1].split("}")[0]
        assert forward.index("ct state established,related") < forward.index("ip6 saddr")

    def test_undeclared_chain(self):
        with pytest.raises(BackendError, match="undeclared"):
            NftablesBackend().render([TO_HOST])

    def test_apply_replaces_table_atomically(self, monkeypatch):
        recorder = _Recorder()
        monkeypatch.setattr(dockwall.backends.nftables, "run_command", recorder)
        backend = NftablesBackend()
        backend.apply(RULES, ctx=None)
        backend.apply(RULES, ctx=None)

        assert len(recorder.calls) == 2
        cmd, script = recorder.calls[0]
        assert cmd == ["nft", "-f", "-"]
        assert script.startswith("table inet dockwall {}\ndelete table inet dockwall\ntable inet dockwall {")
        assert recorder.calls[0] == recorder.calls[1]

    def test_cleanup(self, monkeypatch):
        recorder = _Recorder()
        monkeypatch.setattr(dockwall.backends.nftables, "run_command", recorder)
        NftablesBackend(table="fw").cleanup()
        assert recorder.calls == [(["nft", "delete", "table", "inet", "fw"], None)]


class TestIptables:
    def test_render_family_filters_by_address(self):
        backend = IptablesBackend()
        v4 = backend.render_family(RULES, "ipv4")
        v6 = backend.render_family(RULES, "ipv6")
        assert "fd00::2" not in v4
        assert "-s fd00::2 -d fd00::3 -p tcp --dport 8000:8100" in v6
        assert "172.20.0.3" not in v6
        assert "-j DNAT --to-destination 172.20.0.3:80" in v4
        assert "-m addrtype --dst-type LOCAL" in v4

    def test_render_structure(self):
        v4 = IptablesBackend().render_family(RULES, "ipv4").splitlines()
        assert v4[0] == "*filter"
        assert v4[1:3] == [":DOCKWALL-INPUT - [0:0]", ":DOCKWALL-FORWARD - [0:0]"]
        assert "-m conntrack --ctstate ESTABLISHED,RELATED" in v4[3]
        # The drop policy of the forward chain becomes its last rule.
        filter_end = v4.index("COMMIT")
        assert v4[filter_end - 1] == '-A DOCKWALL-FORWARD -m comment --comment "DOCKWALL-MARKER:defaults" -j DROP'
        assert v4[filter_end + 1:] == ["*nat", ":DOCKWALL-PREROUTING - [0:0]", v4[filter_end + 3], "COMMIT"]

    def test_apply_inserts_missing_jumps(self, monkeypatch):
        recorder = _Recorder()
        monkeypatch.setattr(dockwall.backends.iptables, "run_command", recorder)
        IptablesBackend(families=("ipv4",)).apply(RULES, ctx=None)

        commands = [cmd for cmd, _ in recorder.calls]
        assert commands[0] == ["iptables-restore", "--noflush"]
        assert ["iptables", "-t", "filter", "-I", "FORWARD", "1", "-m", "comment", "--comment",
                jump_marker("DOCKWALL-FORWARD"), "-j", "DOCKWALL-FORWARD"] in commands
        assert sum(1 for cmd in commands if "-I" in cmd) == len(SETUPS)

    def test_apply_keeps_single_jump(self, monkeypatch):
        jump = f'-A FORWARD -m comment --comment "{jump_marker("DOCKWALL-FORWARD")}" -j DOCKWALL-FORWARD'
        listing = f"-P FORWARD ACCEPT\n{jump}\n{jump}\n"
        recorder = _Recorder({("iptables", "-t", "filter", "-S", "FORWARD"): listing})
        monkeypatch.setattr(dockwall.backends.iptables, "run_command", recorder)
        IptablesBackend(families=("ipv4",)).apply(RULES, ctx=None)

        commands = [cmd for cmd, _ in recorder.calls]
        assert not [cmd for cmd in commands if "-I" in cmd and "FORWARD" in cmd]
        deletes = [cmd for cmd in commands if "-D" in cmd]
        assert deletes == [["iptables", "-t", "filter", "-D", "FORWARD", "-m", "comment", "--comment",
                            jump_marker("DOCKWALL-FORWARD"), "-j", "DOCKWALL-FORWARD"]]
