"""Unit tests for input validation helpers."""
import sys
import xml.etree.ElementTree as ET
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from swarm_agent.security_utils import (
    SecurityError,
    child_text,
    normalize_url,
    parse_xml_safely,
    split_labels,
    validate_label_tokens,
    validate_node_name,
)


class TestNormalizeUrl:
    """Tests for coordinator URL normalization."""

    def test_adds_trailing_slash(self):
        assert normalize_url("http://ci:8080/jenkins") == "http://ci:8080/jenkins/"

    def test_keeps_trailing_slash(self):
        assert normalize_url("https://ci/") == "https://ci/"

    def test_strips_whitespace(self):
        assert normalize_url("  http://ci  ") == "http://ci/"

    @pytest.mark.parametrize("url", ["", "   ", "ci:8080", "file:///etc", "http:///path",
                                     "http://ci:port/", "http://c i/"])
    def test_rejected(self, url):
        with pytest.raises(SecurityError):
            normalize_url(url)


class TestValidateNodeName:
    """Tests for node name validation."""

    def test_valid(self):
        assert validate_node_name("build-01.example.com") == "build-01.example.com"

    @pytest.mark.parametrize("name", ["", "a/b", "a\\b", "tab\tname", ".", "..", "x" * 201])
    def test_invalid(self, name):
        with pytest.raises(SecurityError):
            validate_node_name(name)


class TestLabels:
    """Tests for label splitting."""

    def test_split(self):
        assert split_labels("  linux\tdocker\n gpu ") == ["linux", "docker", "gpu"]

    def test_split_empty(self):
        assert split_labels("") == []
        assert split_labels(None) == []

    def test_validate_flattens(self):
        assert validate_label_tokens(["a b", "c"]) == ["a", "b", "c"]

    def test_validate_rejects_control_characters(self):
        with pytest.raises(SecurityError):
            validate_label_tokens(["ok", "bad\x1b[31m"])


class TestXml:
    """Tests for hardened XML parsing."""

    def test_parse(self):
        root = parse_xml_safely(b"<a><b>text</b></a>")
        assert child_text(root, "b") == "text"
        assert child_text(root, "c") is None

    def test_child_text_concatenates(self):
        root = parse_xml_safely("<a><b>one<i>two</i></b></a>")
        assert child_text(root, "b") == "onetwo"

    def test_empty_child(self):
        assert child_text(parse_xml_safely("<a><b/></a>"), "b") == ""

    def test_refuses_entities(self):
        """Entity declarations are refused before parsing."""
        payload = b'<?xml version="1.0"?><!DOCTYPE a [<!ENTITY e "x">]><a>&e;</a>'
        with pytest.raises(SecurityError):
            parse_xml_safely(payload)

    def test_malformed(self):
        with pytest.raises(ET.ParseError):
            parse_xml_safely("<a>")
