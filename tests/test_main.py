"""Tests for the command line entry point."""

import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from replay_agent.core.errors import ConfigError
from replay_agent.main import build_parser, main, parse_variables


class TestParseVariables:
    """Test NAME=VALUE parsing."""

    def test_scalars_and_lists(self):
        variables = parse_variables(["name=Ada", "count=3", "items=[a, b, c]", "empty="])

        assert variables == {"name": "Ada", "count": 3, "items": ["a", "b", "c"], "empty": ""}

    def test_invalid_pair(self):
        with pytest.raises(ConfigError):
            parse_variables(["novalue"])


class TestScopeCommand:
    """Test the scope subcommand."""

    def test_classifies_urls(self, capsys):
        exit_code = main([
            "scope",
            "--base-domain", "getvergo.com",
            "--sso", "*.okta.com",
            "https://app.getvergo.com/x",
            "https://acme.okta.com",
            "https://gmail.com/?token=secret",
        ])

        assert exit_code == 0
        output = json.loads(capsys.readouterr().out)
        assert [r["reason"] for r in output["results"]] == ["base_domain", "sso_provider", "denied"]
        assert output["stats"]["totalNavigations"] == 3
        assert output["paused"] is True
        assert "secret" not in json.dumps(output)

    def test_invalid_base_domain(self):
        assert main(["scope", "--base-domain", " ", "https://x.io"]) == 2

    def test_run_requires_workflow_file(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["run"])
