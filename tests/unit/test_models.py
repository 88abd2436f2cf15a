"""
Unit tests for certificate and attempt models.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from certkeeper.models.attempt import AttemptOutcome, RenewalAttempt
from certkeeper.models.certificate import (
    DomainSetConfig,
    IssuedCertificate,
    ManagedCertificate,
    domain_set_key,
    normalize_domain,
    utcnow,
)


def managed(**overrides) -> ManagedCertificate:
    data = dict(
        key="example.com",
        domains=["example.com"],
        cert_path="/etc/certkeeper/live/example.com/cert.pem",
        key_path="/etc/certkeeper/live/example.com/key.pem",
        chain_path="/etc/certkeeper/live/example.com/chain.pem",
    )
    data.update(overrides)
    return ManagedCertificate(**data)


class TestDomainNames:
    def test_normalize(self):
        assert normalize_domain("  WWW.Example.COM. ") == "www.example.com"

    @pytest.mark.parametrize("name", ["", "*.example.com", "exa mple.com", "-example.com", "a..b.com"])
    def test_invalid(self, name):
        with pytest.raises(ValueError):
            normalize_domain(name)

    def test_key_is_order_independent(self):
        assert domain_set_key(["www.example.com", "Example.com", "example.com"]) == "example.com,www.example.com"

    def test_domain_set_keeps_primary_order(self):
        domain_set = DomainSetConfig(domains=["www.example.com", "example.com", "WWW.example.com"])
        assert domain_set.domains == ["www.example.com", "example.com"]
        assert domain_set.primary_domain == "www.example.com"
        assert domain_set.key == "example.com,www.example.com"

    def test_domain_set_requires_domains(self):
        with pytest.raises(ValidationError):
            DomainSetConfig(domains=[])


class TestManagedCertificate:
    def test_cert_dir(self):
        assert managed().cert_dir == "/etc/certkeeper/live/example.com"

    def test_days_until_expiry(self):
        now = utcnow()
        cert = managed(expires_at=now + timedelta(days=10, hours=1))
        assert cert.days_until_expiry(now) == 10
        assert managed().days_until_expiry(now) is None

    def test_next_renewal_is_window_start(self):
        now = utcnow()
        cert = managed(expires_at=now + timedelta(days=60))
        assert cert.next_renewal_at(timedelta(days=30)) == now + timedelta(days=30)

    def test_next_renewal_honours_backoff(self):
        now = utcnow()
        cert = managed(expires_at=now + timedelta(days=10), next_attempt_at=now + timedelta(hours=2))
        assert cert.next_renewal_at(timedelta(days=30)) == now + timedelta(hours=2)

    def test_in_flight_not_serialized(self):
        cert = managed(in_flight=True)
        assert "in_flight" not in cert.model_dump()


class TestIssuedCertificate:
    def test_fullchain(self):
        issued = IssuedCertificate(domains=["example.com"], cert_pem=b"LEAF\n", chain_pem=b"CHAIN\n", key_pem=b"KEY")
        assert issued.fullchain_pem == b"LEAF\nCHAIN\n"

    def test_fullchain_without_chain(self):
        issued = IssuedCertificate(domains=["example.com"], cert_pem=b"LEAF\n", key_pem=b"KEY")
        assert issued.fullchain_pem == b"LEAF\n"


class TestRenewalAttempt:
    def test_attempt_is_immutable(self):
        attempt = RenewalAttempt(domain_key="example.com", attempt_number=1, outcome=AttemptOutcome.SUCCESS)
        with pytest.raises(ValidationError):
            attempt.error = "changed"

    def test_ids_are_unique(self):
        first = RenewalAttempt(domain_key="example.com", attempt_number=1, outcome=AttemptOutcome.SUCCESS)
        second = RenewalAttempt(domain_key="example.com", attempt_number=1, outcome=AttemptOutcome.SUCCESS)
        assert first.id.startswith("att-")
        assert first.id != second.id
