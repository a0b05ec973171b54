import pytest

from conftest import make_config
from ipv6egress.config import ConfigError, FixedEgressConfig, load_config_from_env, parse_multi_ipv4, validate_config


def test_parse_multi_ipv4_skips_malformed_entries():
    got = parse_multi_ipv4("1.2.3.4:8080, 5.6.7.8: ,:9000,bad,9.9.9.9:70000,1.1.1.1:x,a:b:c", 101)
    assert got == (FixedEgressConfig("1.2.3.4", 8080), FixedEgressConfig("5.6.7.8", 101))


def test_parse_multi_ipv4_empty():
    assert parse_multi_ipv4("", 101) == ()


def test_load_config_defaults(clean_env):
    cfg = load_config_from_env()
    assert cfg.cidr == ""
    assert cfg.bind == "0.0.0.0"
    assert cfg.random_ipv6_port == 100
    assert cfg.real_ipv4_port == 101
    assert cfg.dial_timeout == 30.0
    assert cfg.resolver == "system"
    assert cfg.auto_route and cfg.auto_forwarding and cfg.auto_ip_nonlocal_bind
    assert not cfg.verbose


def test_load_config_from_env(clean_env):
    clean_env.setenv("IPV6EGRESS_CIDR", "2001:db8::/32")
    clean_env.setenv("IPV6EGRESS_REAL_IPV4_PORT", "2000")
    clean_env.setenv("IPV6EGRESS_MULTI_IPV4", "10.0.0.1:3001,10.0.0.2:")
    clean_env.setenv("IPV6EGRESS_AUTO_ROUTE", "off")
    clean_env.setenv("IPV6EGRESS_VERBOSE", "1")
    cfg = load_config_from_env()
    assert cfg.cidr == "2001:db8::/32"
    assert cfg.multi_ipv4 == (FixedEgressConfig("10.0.0.1", 3001), FixedEgressConfig("10.0.0.2", 2000))
    assert not cfg.auto_route
    assert cfg.verbose


def test_validate_accepts_rotation_only():
    validate_config(make_config(cidr="2001:db8::/32"))


def test_validate_accepts_fixed_only():
    validate_config(make_config(real_ipv4="192.0.2.10"))


def test_validate_requires_some_egress():
    with pytest.raises(ConfigError, match="no egress"):
        validate_config(make_config())


@pytest.mark.parametrize("cidr", ["garbage", "10.0.0.0/8", "2001:db8::1/128"])
def test_validate_rejects_bad_cidr(cidr):
    with pytest.raises(ConfigError):
        validate_config(make_config(cidr=cidr))


def test_validate_rejects_bad_fixed_address():
    with pytest.raises(ConfigError, match="invalid IPv4"):
        validate_config(make_config(cidr="2001:db8::/32", real_ipv4="2001:db8::1"))
    with pytest.raises(ConfigError, match="invalid IPv4"):
        validate_config(make_config(multi_ipv4=(FixedEgressConfig("300.1.1.1", 3000),)))


def test_validate_rejects_unknown_resolver():
    with pytest.raises(ConfigError, match="resolver"):
        validate_config(make_config(cidr="2001:db8::/32", resolver="carrier-pigeon"))
