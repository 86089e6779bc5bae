"""
Unit tests for input validation and output parsing (utils/).
"""

import pytest

from vigil.utils.parsing import DigParser, NmapParser, OutputParseError, WhoisParser
from vigil.utils.validation import (
    ValidationError,
    format_port_spec,
    normalize_domain,
    parse_port_spec,
    validate_domain,
    validate_hostname,
    validate_ip,
    validate_ip_network,
    validate_port,
    validate_target,
)

from conftest import NMAP_PING_XML, NMAP_TCP_XML, WHOIS_OUTPUT


class TestValidation:
    """Tests for the validate_* helpers."""

    def test_validate_ip(self):
        assert validate_ip("192.168.1.1")[0]
        assert validate_ip("::1")[0]
        assert not validate_ip("192.168.1.256")[0]
        assert not validate_ip("example.com")[0]

    def test_validate_ip_network_requires_prefix(self):
        assert validate_ip_network("10.0.0.0/24")[0]
        assert not validate_ip_network("10.0.0.1")[0]

    def test_validate_hostname(self):
        assert validate_hostname("scanme.lab")[0]
        assert not validate_hostname("bad_host!")[0]
        assert not validate_hostname("-leading.example.com")[0]

    def test_validate_domain(self):
        assert validate_domain("example.com")[0]
        assert validate_domain("example.com.")[0]
        assert not validate_domain("localhost")[0]
        assert not validate_domain("8.8.8.8")[0]
        assert not validate_domain("exa mple.com")[0]

    def test_validate_port(self):
        assert validate_port(22)[0]
        assert validate_port("65535")[0]
        assert not validate_port(0)[0]
        assert not validate_port(70000)[0]
        assert not validate_port("ssh")[0]

    def test_validate_target(self):
        assert validate_target("10.0.0.1") == ("ip", None)
        assert validate_target("10.0.0.0/24") == ("network", None)
        assert validate_target("localhost") == ("hostname", None)
        assert validate_target("not a host")[0] == "unknown"

    def test_normalize_domain(self):
        assert normalize_domain("Example.COM.") == "example.com"
        with pytest.raises(ValueError):
            normalize_domain("10.0.0.1")


class TestPortSpec:
    """Tests for port specification parsing."""

    def test_expands_ranges_and_deduplicates(self):
        assert parse_port_spec("80,22,80,8000-8002") == [22, 80, 8000, 8001, 8002]

    @pytest.mark.parametrize("spec", ["", "0", "65536", "22-", "a,b", "90-80", "22;80", "-1"])
    def test_invalid_specs(self, spec):
        with pytest.raises(ValidationError):
            parse_port_spec(spec)

    def test_format_collapses_runs(self):
        assert format_port_spec([22, 80, 81, 82, 443]) == "22,80-82,443"
        assert format_port_spec([]) == ""


class TestNmapParser:
    """Tests for nmap XML parsing."""

    def test_ping_scan(self):
        hosts = NmapParser.parse_xml(NMAP_PING_XML)

        assert len(hosts) == 1
        assert hosts[0].ip == "192.168.1.10"
        assert hosts[0].state == "up"
        assert hosts[0].ports == []

    def test_port_scan_summary(self):
        summary = NmapParser.summarize(NmapParser.parse_xml(NMAP_TCP_XML))

        assert summary["status"] == "up"
        assert summary["ports"] == [
            {"protocol": "tcp", "port": 22, "state": "open", "service": "ssh"},
            {"protocol": "tcp", "port": 80, "state": "closed", "service": "http"},
            {"protocol": "tcp", "port": 443, "state": "open", "service": None},
        ]
        assert [s["port"] for s in summary["services"]] == [22]
        assert summary["hosts"][0]["hostname"] == "printer.lan"

    def test_no_hosts_is_down(self):
        summary = NmapParser.summarize(NmapParser.parse_xml("<nmaprun></nmaprun>"))
        assert summary["status"] == "down"
        assert summary["ports"] == []

    def test_malformed_xml(self):
        with pytest.raises(OutputParseError):
            NmapParser.parse_xml("<nmaprun><host>")

    def test_wrong_document(self):
        with pytest.raises(OutputParseError):
            NmapParser.parse_xml("<html></html>")


class TestDigParser:
    """Tests for dig +short parsing."""

    def test_records(self):
        assert DigParser.parse_short("93.184.216.34\n\n10 mail.example.com.\n") == [
            "93.184.216.34",
            "10 mail.example.com.",
        ]

    def test_comments_and_empty(self):
        assert DigParser.parse_short(";; connection timed out; no servers could be reached\n") == []
        assert DigParser.parse_short("") == []


class TestWhoisParser:
    """Tests for WHOIS parsing."""

    def test_parse(self):
        parsed = WhoisParser.parse(WHOIS_OUTPUT)

        assert parsed["domain name"] == "EXAMPLE.COM"
        assert parsed["registrar"].startswith("RESERVED")
        assert parsed["creation date"] == "1995-08-14T04:00:00Z"
        assert parsed["name server"] == ["A.IANA-SERVERS.NET", "B.IANA-SERVERS.NET"]

    def test_skips_comments_and_notices(self):
        parsed = WhoisParser.parse(WHOIS_OUTPUT)
        assert not any(key.startswith(("%", ">>>")) for key in parsed)

    def test_empty(self):
        assert WhoisParser.parse("") == {}
