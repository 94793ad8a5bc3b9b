"""Unit tests for blocklist line parsing and validation."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from blocklistdownloadthing import (
    EmptyResultError,
    EntryKind,
    RawPayload,
    SourceFormat,
    classify,
    parse,
    validate_domain,
)


def _payload(text: str, identifier: str = "test") -> RawPayload:
    content = text.encode("utf-8")
    return RawPayload(
        source_identifier=identifier,
        content=content,
        fetched_at=datetime.now(timezone.utc),
        content_hash="unused",
    )


HOSTS_FIVE_VALID_TWO_MALFORMED = """\
# Title: sample hosts file
127.0.0.1 localhost
::1 localhost ip6-localhost
ff02::1 ip6-allnodes

0.0.0.0 ads.example.com
0.0.0.0 tracker.example.net   # inline note
127.0.0.1 Metrics.Example.org.
0.0.0.0 pixel.example.com
cdn.ads.example.io
0.0.0.0 bad_domain.com
192.168.1.1 suspicious.example.com
"""


def test_hosts_counts_malformed_lines_instead_of_failing() -> None:
    """Hosts source with 5 valid and 2 malformed lines yields 5 entries."""
    result = parse(_payload(HOSTS_FIVE_VALID_TWO_MALFORMED), SourceFormat.HOSTS)

    assert sorted(entry.pattern for entry in result.entries) == [
        "ads.example.com",
        "cdn.ads.example.io",
        "metrics.example.org",
        "pixel.example.com",
        "tracker.example.net",
    ]
    assert result.rejected == 2


def test_hosts_entries_are_domains_with_provenance() -> None:
    """Hosts entries keep only the host part and record the source."""
    result = parse(_payload("0.0.0.0 a.example.com b.example.com\n", "alpha"), SourceFormat.HOSTS)

    assert [entry.kind for entry in result.entries] == [EntryKind.DOMAIN, EntryKind.DOMAIN]
    assert all(entry.origin_sources == {"alpha"} for entry in result.entries)


def test_hosts_sentinel_address_alone_is_rejected() -> None:
    """A bare sentinel address is not a host."""
    result = parse(_payload("0.0.0.0\n0.0.0.0 ok.example.com\n"), SourceFormat.HOSTS)

    assert result.rejected == 1
    assert len(result.entries) == 1


def test_plain_list_classifies_domains_addresses_and_networks() -> None:
    """Plain lists may mix domains, addresses and CIDR ranges."""
    text = "Example.COM\n10.0.0.1\n2001:DB8::1\n192.168.0.0/16 ! comment\nnot a domain\n"

    result = parse(_payload(text), SourceFormat.PLAIN)

    kinds = {entry.pattern: entry.kind for entry in result.entries}
    assert kinds == {
        "example.com": EntryKind.DOMAIN,
        "10.0.0.1": EntryKind.IPV4,
        "2001:db8::1": EntryKind.IPV6,
        "192.168.0.0/16": EntryKind.CIDR,
    }
    assert result.rejected == 1


def test_adblock_extracts_domain_rules_and_skips_other_syntax() -> None:
    """Only ||domain^ rules become entries; other syntaxes are skipped."""
    text = (
        "[Adblock Plus 2.0]\n"
        "! Title: sample\n"
        "||ads.example.com^\n"
        "||Tracker.Example.net^\n"
        "@@||allowed.example.com^\n"
        "example.com##.banner\n"
        "/banner[0-9]+/\n"
        "||third.example.org^$third-party\n"
        "||bad_host^\n"
    )

    result = parse(_payload(text), SourceFormat.ADBLOCK)

    assert [entry.pattern for entry in result.entries] == ["ads.example.com", "tracker.example.net"]
    assert result.rejected == 1
    assert result.skipped == 6


def test_adblock_modifier_rules_accepted_when_enabled() -> None:
    """The modifier policy lets ||domain^$option rules through."""
    result = parse(_payload("||third.example.org^$important\n"), SourceFormat.ADBLOCK,
                   adblock_modifiers=True)

    assert [entry.pattern for entry in result.entries] == ["third.example.org"]


def test_cidr_list_canonicalizes_networks() -> None:
    """CIDR entries clear host bits; bare addresses become address entries."""
    text = "10.1.2.3/8\n2001:db8::/32\n203.0.113.7\nexample.com\n"

    result = parse(_payload(text), SourceFormat.CIDR)

    assert [(entry.pattern, entry.kind) for entry in result.entries] == [
        ("10.0.0.0/8", EntryKind.CIDR),
        ("2001:db8::/32", EntryKind.CIDR),
        ("203.0.113.7", EntryKind.IPV4),
    ]
    assert result.rejected == 1


def test_empty_result_raises() -> None:
    """A source without a single valid entry fails with EmptyResultError."""
    with pytest.raises(EmptyResultError):
        parse(_payload("# only comments\n\n<html>error page</html>\n"), SourceFormat.PLAIN)


def test_byte_order_mark_and_bad_bytes_are_ignored() -> None:
    """Leading BOM and undecodable bytes do not break the first line."""
    payload = RawPayload("bom", b"\xef\xbb\xbfexample.com\n\xffbroken.example.net\n",
                         datetime.now(timezone.utc), "unused")

    result = parse(payload, SourceFormat.PLAIN)

    assert [entry.pattern for entry in result.entries] == ["example.com", "broken.example.net"]


@pytest.mark.parametrize(
    "domain, valid",
    [
        ("example.com", True),
        ("a-b.example.co.uk", True),
        ("-bad.example.com", False),
        ("bad-.example.com", False),
        ("under_score.example.com", False),
        ("localhost", False),
        ("1.2.3.4", False),
        ("a" * 64 + ".com", False),
        (".".join(["a" * 63] * 4), False),
    ],
)
def test_validate_domain(domain: str, valid: bool) -> None:
    """Domain labels follow the 1-63 char alphanumeric/hyphen rule."""
    assert validate_domain(domain) is valid


def test_classify_rejects_whitespace_and_garbage() -> None:
    """classify returns None for anything that is not a single valid token."""
    assert classify("two words") is None
    assert classify("10.0.0.0/99") is None
    assert classify("") is None


def test_hosts_only_hash_starts_a_comment() -> None:
    """In hosts and CIDR lists '!' is not a comment marker."""
    hosts = parse(_payload("0.0.0.0 ads.example.com !note\n0.0.0.0 ok.example.com # note\n"),
                  SourceFormat.HOSTS)
    cidr = parse(_payload("10.0.0.0/8 ! note\n192.0.2.0/24 # note\n"), SourceFormat.CIDR)

    assert [entry.pattern for entry in hosts.entries] == ["ok.example.com"]
    assert hosts.rejected == 1
    assert [entry.pattern for entry in cidr.entries] == ["192.0.2.0/24"]
    assert cidr.rejected == 1
