from pathlib import Path

import pytest
import yaml

import smithery
import smithery.cfgfile as cfgfile
from smithery.dtypes import Config, ConnectionParameters, CorsOptions


class TestLoadConfig:
    def test_connection_parameters(self):
        """Validate all the defaults."""
        conparam = ConnectionParameters()
        assert conparam.connect == 5
        assert conparam.read == 20
        assert conparam.write == 20
        assert conparam.pool == 5

        assert conparam.max_connections is None
        assert conparam.max_keepalive_connections is None
        assert conparam.keepalive_expiry == 5.0
        assert conparam.http1 is True
        assert conparam.http2 is False

    def test_config(self):
        """Verify the defaults."""
        cfg = Config()
        assert cfg.kubeconfig is None
        assert cfg.kubecontext is None
        assert (cfg.host, cfg.port) == ("0.0.0.0", 8081)
        assert cfg.widgets_group == "widgets.templates.krateo.io"
        assert cfg.categories == ["widgets", "krateo"]
        assert cfg.discovery_ttl == 600
        assert cfg.apply_attempts == 1
        assert cfg.max_body_size == 100 * 1024
        assert cfg.cors == CorsOptions()
        assert cfg.connection_parameters == ConnectionParameters()

        # Every instance has its own list of categories.
        Config().categories.append("foo")
        assert Config().categories == ["widgets", "krateo"]

    def test_load_default(self):
        """The default configuration file must match the defaults of `Config`."""
        cfg, err = cfgfile.load(smithery.DEFAULT_CONFIG_FILE)
        assert not err
        assert cfg == Config()
        assert smithery.DEFAULT_CONFIG == Config()

    def test_load_empty(self, tmp_path):
        """An empty file means all defaults."""
        fname = tmp_path / "smithery.yaml"
        fname.write_text("")
        assert cfgfile.load(fname) == (Config(), False)

    def test_load(self, tmp_path):
        fname = tmp_path / "smithery.yaml"
        fname.write_text(yaml.dump({
            "kubecontext": "kind",
            "port": 9000,
            "widgets_group": "  foo.io  ",
            "categories": ["foo"],
            "apply_attempts": 3,
            "cors": {"allow_origins": ["https://example.com"]},
            "connection_parameters": {"read": 60},
        }))
        cfg, err = cfgfile.load(fname)
        assert not err

        assert cfg.kubecontext == "kind"
        assert cfg.port == 9000
        assert cfg.widgets_group == "foo.io"
        assert cfg.categories == ["foo"]
        assert cfg.apply_attempts == 3
        assert cfg.cors.allow_origins == ["https://example.com"]
        assert cfg.cors.max_age == 300
        assert cfg.connection_parameters.read == 60
        assert cfg.connection_parameters.connect == 5

    def test_load_kubeconfig_path(self, tmp_path):
        """Relative kubeconfig paths are relative to the config file."""
        fname = tmp_path / "smithery.yaml"

        fname.write_text("kubeconfig: creds/kubeconfig\n")
        cfg, err = cfgfile.load(fname)
        assert not err and cfg.kubeconfig == tmp_path / "creds/kubeconfig"

        fname.write_text("kubeconfig: /absolute/kubeconfig\n")
        cfg, err = cfgfile.load(fname)
        assert not err and cfg.kubeconfig == Path("/absolute/kubeconfig")

    @pytest.mark.parametrize("content", [
        "[foo",                      # YAML error.
        "- foo\n- bar\n",            # Not a map.
        "foo: bar\n",                # Unknown key.
        "port: 0\n",
        "port: 65536\n",
        "widgets_group: ''\n",
        "categories: ['']\n",
        "apply_attempts: 0\n",
        "apply_attempts: 11\n",
        "discovery_ttl: -1\n",
        "max_body_size: 0\n",
    ])
    def test_load_err(self, tmp_path, content):
        """Gracefully handle corrupt or invalid content."""
        fname = tmp_path / "smithery.yaml"
        fname.write_text(content)
        assert cfgfile.load(fname) == (Config(), True)

    def test_load_missing_file(self, tmp_path):
        assert cfgfile.load(tmp_path / "does-not-exist.yaml") == (Config(), True)
