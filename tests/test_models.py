"""Tests for vmports.models module."""

from __future__ import annotations

import dataclasses

import pytest

from vmports.models import ForwardingRule, Lease, ResolvedForward, normalize_host_ip


class TestForwardingRule:
    def test_defaults(self):
        rule = ForwardingRule(guest_port=80, host_port=8080)
        assert rule.protocol == "tcp"
        assert rule.host_ip is None
        assert rule.disabled is False
        assert rule.auto_correct is False

    def test_is_immutable(self):
        rule = ForwardingRule(guest_port=80, host_port=8080)
        with pytest.raises(dataclasses.FrozenInstanceError):
            rule.host_port = 8081  # type: ignore[misc]

    @pytest.mark.parametrize(
        "kwargs, expected",
        [({}, True), ({"disabled": True}, False), ({"protocol": "udp"}, False)],
    )
    def test_arbitrated(self, kwargs, expected):
        assert ForwardingRule(guest_port=80, host_port=8080, **kwargs).arbitrated is expected


class TestResolvedForward:
    def test_exposes_rule_fields(self):
        rule = ForwardingRule(guest_port=80, host_port=8080, host_ip="127.0.0.1")
        fwd = ResolvedForward(rule, 2200, 8080, repaired=True)
        assert fwd.guest_port == 80
        assert fwd.host_ip == "127.0.0.1"
        assert fwd.protocol == "tcp"
        assert fwd.host_port == 2200


class TestLease:
    def test_key(self):
        assert Lease("192.168.1.5", 8080, "owner", 0.0).key == "192_168_1_5_8080"
        assert Lease(None, 8080, "owner", 0.0).key == "8080"

    def test_expiry(self):
        lease = Lease(None, 8080, "owner", created_at=100.0)
        assert lease.is_expired(now=160.0, ttl=60) is False
        assert lease.is_expired(now=160.5, ttl=60) is True


class TestNormalizeHostIp:
    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_empty_is_wildcard(self, value):
        assert normalize_host_ip(value) == "*"

    def test_keeps_address(self):
        assert normalize_host_ip(" 10.0.0.1 ") == "10.0.0.1"
