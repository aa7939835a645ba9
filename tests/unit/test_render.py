"""Tests for Hysteria config rendering and custom config checks."""

import yaml

from nodefleet.sync.render import (
    check_custom_config,
    is_trivial_custom_config,
    render_node_config,
)


class TestRenderNodeConfig:
    def test_acme_when_domain(self, make_node):
        node = make_node("a", domain="a.example.com", port=8443)
        config = yaml.safe_load(render_node_config(node, "https://panel/api/auth"))

        assert config["listen"] == ":8443"
        assert config["acme"]["domains"] == ["a.example.com"]
        assert "tls" not in config
        assert config["auth"] == {
            "type": "http",
            "http": {"url": "https://panel/api/auth", "insecure": False},
        }

    def test_tls_without_domain(self, make_node):
        node = make_node("a")
        config = yaml.safe_load(render_node_config(node, "https://panel/api/auth"))

        assert "acme" not in config
        assert config["tls"] == {"cert": node.paths.cert, "key": node.paths.key}

    def test_traffic_stats_block(self, make_node):
        with_stats = yaml.safe_load(render_node_config(make_node("a", stats_port=7777), ""))
        without = yaml.safe_load(render_node_config(make_node("b", stats_secret=""), ""))

        assert with_stats["trafficStats"] == {"listen": ":7777", "secret": "s3cret"}
        assert "trafficStats" not in without

    def test_rendered_text_passes_custom_checks(self, make_node):
        text = render_node_config(make_node("a", domain="a.example.com"), "https://x")
        assert check_custom_config(text) == []


class TestCustomConfig:
    def test_trivial(self):
        assert is_trivial_custom_config("")
        assert is_trivial_custom_config("   listen: :443   ")
        assert not is_trivial_custom_config("listen: :443\n" + "#" * 60)

    def test_check_custom_config(self):
        assert check_custom_config("listen: :443\ntls:\n  cert: a\n") == []
        assert check_custom_config("listen: :443\nacme:\n  domains: [x]\n") == []
        assert check_custom_config("tls:\n  cert: a\n") == ["missing listen:"]
        assert check_custom_config("listen: :443\n") == ["missing acme: or tls:"]
