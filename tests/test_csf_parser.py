"""Tests for the CSF / blacklist / log parsers against recorded output."""

import json

import pytest

from conftest import read_fixture
from ipunblock.core.enums import EvidenceKind
from ipunblock.kernel.csf_parser import (
    contains_ip,
    filter_auth_failures,
    filter_list_lines,
    find_primary_evidence,
    format_modsecurity,
    is_valid_ip,
    parse_deny_line,
    same_address,
    summarize_block,
)


@pytest.mark.parametrize(
    "fixture, ip, kinds",
    [
        ("csf_production_deny.txt", "195.133.213.117",
         {EvidenceKind.IPSET_MATCH, EvidenceKind.DENY_LIST_ECHO}),
        ("csf_temporary_block.txt", "2.2.2.2",
         {EvidenceKind.CHAIN_RULE, EvidenceKind.TEMPORARY_BLOCK}),
        ("csf_multiple_rules.txt", "5.102.173.71", {EvidenceKind.CHAIN_RULE}),
        ("csf_cpanel_permblock.txt", "192.0.2.123",
         {EvidenceKind.CHAIN_RULE, EvidenceKind.DENY_LIST_ECHO}),
    ],
)
def test_recorded_blocks_are_detected(fixture, ip, kinds):
    evidence = find_primary_evidence(read_fixture(fixture), ip)
    assert evidence.blocked is True
    assert set(evidence.kinds) == kinds


@pytest.mark.parametrize(
    "fixture, ip",
    [
        ("csf_clean.txt", "1.1.1.1"),
        ("csf_allow_only.txt", "192.168.1.100"),
    ],
)
def test_recorded_clean_output_is_not_blocked(fixture, ip):
    evidence = find_primary_evidence(read_fixture(fixture), ip)
    assert evidence.blocked is False
    assert evidence.lines == ()


def test_prefix_and_suffix_addresses_never_match():
    output = read_fixture("csf_cpanel_permblock.txt")
    assert find_primary_evidence(output, "192.0.2.12").blocked is False
    assert find_primary_evidence(output, "92.0.2.123").blocked is False

    line = "filter DENYIN 10 0 0 DROP all -- !lo * 10.0.0.100 0.0.0.0/0"
    assert find_primary_evidence(line, "10.0.0.1").blocked is False
    assert contains_ip("rip=192.168.10.0.0.1", "10.0.0.1") is False
    assert contains_ip("rip=110.0.0.1", "10.0.0.1") is False
    assert contains_ip("rip=10.0.0.1, lip=x", "10.0.0.1") is True


def test_exact_token_blocks_where_neighbours_do_not():
    neighbours = (
        "filter DENYIN 10 0 0 DROP all -- !lo * 10.0.0.100 0.0.0.0/0\n"
        "filter DENYIN 11 0 0 DROP all -- !lo * 192.168.10.0.1 0.0.0.0/0"
    )
    assert find_primary_evidence(neighbours, "10.0.0.1").blocked is False

    exact = neighbours + "\nfilter DENYIN 12 0 0 DROP all -- !lo * 10.0.0.1 0.0.0.0/0"
    evidence = find_primary_evidence(exact, "10.0.0.1")
    assert evidence.blocked is True
    assert evidence.lines == ("filter DENYIN 12 0 0 DROP all -- !lo * 10.0.0.1 0.0.0.0/0",)


def test_single_host_cidr_is_tolerated():
    assert same_address("10.0.0.1/32", "10.0.0.1")
    assert same_address("2001:db8::1/128", "2001:db8::1")
    assert not same_address("10.0.0.0/24", "10.0.0.1")
    line = "filter DENYIN 5 0 0 DROP all -- !lo * 10.0.0.1/32 0.0.0.0/0"
    assert find_primary_evidence(line, "10.0.0.1").blocked is True


def test_ipset_without_deny_set_is_not_evidence():
    line = "IPSET: Set:chain_ALLOW Match:10.0.0.1 Setting: File:/etc/csf/csf.allow"
    assert find_primary_evidence(line, "10.0.0.1").blocked is False


def test_garbage_input_is_no_evidence():
    assert find_primary_evidence("", "10.0.0.1").blocked is False
    assert find_primary_evidence("\x00\x01 filter DENYIN", "10.0.0.1").blocked is False
    assert summarize_block("random text", "10.0.0.1")["blocked"] is False


def test_is_valid_ip():
    assert is_valid_ip("10.0.0.1")
    assert is_valid_ip("2001:db8::1")
    assert not is_valid_ip("10.0.0.256")
    assert not is_valid_ip("10.0.0.1; rm -rf /")


def test_blacklist_first_token_must_equal_ip():
    output = read_fixture("da_bfm_blacklist.txt")
    assert filter_list_lines(output, "192.0.2.123") == "192.0.2.123 20241201103335"
    assert filter_list_lines(output, "203.0.113.45").endswith("WordPress brute force")
    assert filter_list_lines(output, "192.0.2.12") == ""


def test_tempip_pipe_separated_lines():
    output = "10.0.0.1|22|in|1735689600|lfd - Failed SSH login\n10.0.0.10|22|in|1|x"
    kept = filter_list_lines(output, "10.0.0.1", r"\s|")
    assert kept.startswith("10.0.0.1|22")
    assert "10.0.0.10" not in kept


def test_auth_failures_are_filtered_by_marker_and_ip():
    exim = (
        "2024-12-01 10:33:35 dovecot_login authenticator failed for (host) [203.0.113.45]: "
        "535 Incorrect authentication data\n"
        "2024-12-01 10:33:36 dovecot_login authenticator failed for (host) [203.0.113.450]: 535\n"
        "2024-12-01 10:33:37 <= someone@example.com H=(host) [203.0.113.45] P=esmtpa"
    )
    kept = filter_auth_failures(exim, "203.0.113.45", "authenticator failed")
    assert kept.count("\n") == 0
    assert "[203.0.113.45]" in kept

    dovecot = (
        "dovecot: auth: Info: Disconnected (auth failed, 5 attempts in 5 secs): "
        "user=<x>, method=PLAIN, rip=203.0.113.45, lip=10.0.0.2"
    )
    assert filter_auth_failures(dovecot, "203.0.113.45", "auth failed") == dovecot


def test_modsecurity_json_is_formatted():
    entry = {
        "transaction": {
            "client_ip": "203.0.113.45",
            "time_stamp": "Sun Dec  1 10:33:35 2024",
            "request": {"uri": "/wp-login.php"},
            "messages": [
                {"message": "SQL Injection Attack", "details": {"ruleId": "942100"}},
            ],
        }
    }
    other = {"transaction": {"client_ip": "203.0.113.46", "messages": []}}
    output = "\n".join([json.dumps(entry), "not json", json.dumps(other)])

    rendered = format_modsecurity(output, "203.0.113.45")
    assert rendered == (
        "[Sun Dec  1 10:33:35 2024] IP: 203.0.113.45 | URI: /wp-login.php | "
        "Rules: [942100] SQL Injection Attack"
    )


def test_parse_lfd_deny_line():
    line = (
        "csf.deny: 192.0.2.123 # lfd: (PERMBLOCK) 192.0.2.123 (XX/Unknown/-) has had more "
        "than 4 temp blocks in the last 86400 secs - Thu May 22 00:21:11 2025"
    )
    entry = parse_deny_line(line)
    assert entry.ip == "192.0.2.123"
    assert entry.reason_type == "PERMBLOCK"
    assert entry.location == "XX/Unknown/-"
    assert entry.blocked_since == "Thu May 22 00:21:11 2025"


def test_parse_sshd_deny_line_attempts():
    line = (
        "10.0.0.1 # lfd: (sshd) Failed SSH login from 10.0.0.1 (CN/China/-): "
        "5 in the last 3600 secs - Wed Jan  1 10:00:00 2025"
    )
    entry = parse_deny_line(line)
    assert entry.reason_type == "sshd"
    assert entry.attempts == 5
    assert entry.timeframe == 3600
    assert entry.location == "CN/China/-"


def test_parse_deny_line_rejects_non_entries():
    assert parse_deny_line("No matches found") is None
    assert parse_deny_line("") is None


def test_summarize_manual_deny():
    summary = summarize_block(read_fixture("csf_production_deny.txt"), "195.133.213.117")
    assert summary["blocked"] is True
    assert summary["block_type"] == "csf.deny"
    assert summary["reason_short"] == "BFM"


def test_summarize_temporary_block():
    summary = summarize_block(read_fixture("csf_temporary_block.txt"), "2.2.2.2")
    assert summary["block_type"] == "temporary"
    assert summary["ttl"] == 3600
    assert summary["location"] == "FR/France/-"


def test_summarize_rules_only():
    summary = summarize_block(read_fixture("csf_multiple_rules.txt"), "5.102.173.71")
    assert summary["block_type"] == "firewall_rules"
