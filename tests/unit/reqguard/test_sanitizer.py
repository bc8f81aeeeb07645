#!/usr/bin/env python3
"""
Unit tests for input sanitization and threat classification.

Tests cover:
- Removal pattern table, one detector at a time
- Recursive sanitization of lists and mappings, key caps, skip fields
- classify() families and purity
- Request screening: per-location caps, filename screening, events
"""

import time

import pytest

from reqguard.events import EventKind
from reqguard.sanitizer import (
    REMOVAL_PATTERNS,
    THREAT_PATTERNS,
    InputSanitizer,
    SanitizeOptions,
    SanitizerConfig,
    ThreatFamily,
    classify,
    sanitize,
    sanitize_filename,
)


@pytest.fixture
def sanitizer(audit):
    return InputSanitizer(SanitizerConfig(), audit=audit)


class TestRemovalPatterns:
    """Each removal detector in isolation."""

    @pytest.mark.parametrize("name,sample", [
        ("script", "<script>alert(1)</script>"),
        ("javascript", "JavaScript:"),
        ("vbscript", "vbscript:"),
        ("data_url", "data:text/html"),
        ("event_handlers", "onerror ="),
        ("style", "<style>body{}</style>"),
        ("iframe", "<iframe src=x></iframe>"),
        ("object", "<object data=x></object>"),
        ("embed", "<embed src=x></embed>"),
        ("meta_refresh", '<meta http-equiv="refresh" content="0">'),
        ("base64_script", "data:text/javascript;base64,YWxlcnQoMSk="),
    ])
    def test_detector_matches(self, name, sample):
        patterns = {n: p for n, p, _ in REMOVAL_PATTERNS}
        assert patterns[name].search(sample)

    def test_table_is_declarative(self):
        names = [name for name, _, _ in REMOVAL_PATTERNS]
        assert len(names) == len(set(names))
        for _, _, family in THREAT_PATTERNS:
            assert isinstance(family, ThreatFamily)


class TestSanitize:
    """Test recursive sanitization."""

    def test_script_removed(self):
        assert sanitize("<script>alert(1)</script>Hello") == "Hello"

    def test_control_characters_removed_but_newlines_kept(self):
        assert sanitize("a\x00b\x07c\td\ne\r\nf\x7f") == "abc\td\ne\r\nf"

    def test_whitespace_trimmed(self):
        assert sanitize("   padded  ") == "padded"

    def test_length_cap(self):
        assert sanitize("abcdef", SanitizeOptions(max_length=3)) == "abc"

    def test_cap_then_trim(self):
        assert sanitize("ab   cd", SanitizeOptions(max_length=4)) == "ab"

    def test_nested_structures(self):
        value = {
            "notes": "<script>x</script>",
            "tags": ["<iframe src=a></iframe>ok", "fine"],
            "meta": {"link": "javascript:alert(1)"},
        }
        assert sanitize(value) == {
            "notes": "",
            "tags": ["ok", "fine"],
            "meta": {"link": "alert(1)"},
        }

    def test_keys_sanitized_and_capped(self):
        result = sanitize({"k" * 150: "v", "<script>a</script>name": "x"})
        assert result == {"k" * 100: "v", "name": "x"}

    def test_skip_fields_untouched(self):
        options = SanitizeOptions(skip_fields=frozenset({"password"}))
        result = sanitize({"password": " <script>p</script> ", "name": " bob "}, options)
        assert result == {"password": " <script>p</script> ", "name": "bob"}

    def test_non_strings_pass_through(self):
        assert sanitize(42) == 42
        assert sanitize(None) is None
        assert sanitize(True) is True
        assert sanitize({"n": 1.5}) == {"n": 1.5}

    def test_tuple_becomes_list(self):
        assert sanitize((" a ", " b ")) == ["a", "b"]

    def test_html_removal_can_be_disabled(self):
        assert sanitize("<b onclick=x>", SanitizeOptions(html=False)) == "<b onclick=x>"

    def test_removal_repeats_until_clean(self):
        nested = "<scr<script>x</script>ipt>alert(1)</script>"
        once = sanitize(nested)
        assert "<script" not in once.lower()
        assert sanitize(once) == once

    def test_spliced_scheme_removed(self):
        assert sanitize("javajavascript:script:alert(1)") == "alert(1)"

    def test_event_handler_inside_word_kept(self):
        assert sanitize("dragonfly=1") == "dragonfly=1"
        assert sanitize("<img onerror=x>") == "<img x>"


class TestLargeInput:
    """Hostile input is capped before any pattern runs."""

    def test_unclosed_script_tags_sanitized_quickly(self):
        start = time.perf_counter()
        result = sanitize("<script" * 20000, SanitizeOptions(max_length=10000))
        elapsed = time.perf_counter() - start

        assert elapsed < 1.0
        assert len(result) <= 10000

    def test_unclosed_script_tags_classified_quickly(self):
        start = time.perf_counter()
        result = classify("<script" * 20000)
        elapsed = time.perf_counter() - start

        assert elapsed < 1.0
        assert result.families == [ThreatFamily.OVERSIZED_INPUT]

    def test_repeated_meta_tags_sanitized_quickly(self):
        start = time.perf_counter()
        sanitize("<meta " * 5000 + ">")
        assert time.perf_counter() - start < 1.0

    def test_markup_after_cap_not_scanned(self):
        value = "a" * 10 + "<script>x</script>"
        assert sanitize(value, SanitizeOptions(max_length=10)) == "a" * 10

    def test_markup_before_last_closing_tag_removed(self):
        value = "<script>a</script>keep<script>b</script><script"
        assert sanitize(value) == "keep<script"

    def test_oversized_value_still_classified_on_prefix(self):
        result = classify("../etc/passwd" + "a" * 10000)
        assert result.families == [ThreatFamily.PATH_TRAVERSAL, ThreatFamily.OVERSIZED_INPUT]

    def test_threat_beyond_classify_cap_not_reported(self):
        result = classify("a" * 10000 + "../etc/passwd")
        assert result.families == [ThreatFamily.OVERSIZED_INPUT]


class TestClassify:
    """Test threat classification."""

    def test_sql_injection(self):
        result = classify("' OR '1'='1")
        assert result.valid is False
        assert "Potential SQL injection detected" in result.issues

    def test_union_select(self):
        assert ThreatFamily.SQL_INJECTION in classify("1 UNION SELECT password FROM users").families

    def test_path_traversal(self):
        result = classify("../../etc/passwd")
        assert "Potential path traversal detected" in result.issues

    def test_encoded_path_traversal(self):
        assert ThreatFamily.PATH_TRAVERSAL in classify("%2e%2e%2fetc").families

    def test_command_injection(self):
        result = classify("file.txt; rm -rf /")
        assert "Potential command injection detected" in result.issues

    def test_script_injection(self):
        result = classify("<script>x</script>")
        assert result.families == [ThreatFamily.SCRIPT_INJECTION]
        assert result.issues == ["Potential script injection detected"]

    def test_oversized_input(self):
        result = classify("a" * 10001)
        assert result.issues == ["Input too long - potential DoS attack"]

    def test_cap_boundary(self):
        assert classify("a" * 10000).valid

    def test_clean_input(self):
        result = classify("Jane Doe wants a 3 bedroom house")
        assert result.valid
        assert result.issues == []

    def test_one_issue_per_family(self):
        result = classify("x' -- ; DROP TABLE users WHERE 1=1")
        assert result.issues.count("Potential SQL injection detected") == 1

    def test_kind_restricts_families(self):
        assert classify("' OR 1=1; ls", "path").valid
        assert classify("../x", "sql").valid
        assert classify("../x", "path").families == [ThreatFamily.PATH_TRAVERSAL]

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            classify("x", "bogus")

    def test_non_string_valid(self):
        assert classify(12).valid
        assert classify(None).valid

    def test_does_not_mutate(self):
        value = ["' OR 1=1"]
        classify(value[0])
        assert value == ["' OR 1=1"]


class TestFilenames:
    """Test upload filename screening."""

    def test_clean_filename(self):
        clean, classification = sanitize_filename(" report.pdf ")
        assert clean == "report.pdf"
        assert classification.valid

    def test_traversal_filename(self):
        _, classification = sanitize_filename("../../etc/passwd")
        assert not classification.valid

    def test_filename_capped(self):
        clean, _ = sanitize_filename("a" * 300 + ".png")
        assert len(clean) == 255


class TestSanitizerConfig:
    """Test configuration."""

    def test_defaults(self):
        config = SanitizerConfig()
        assert config.block_on_security_issues is False
        assert config.skip_body_fields == ['password', 'token', 'refreshToken']
        assert (config.query_max_length, config.body_max_length, config.params_max_length) == (500, 10000, 200)

    def test_invalid_cap(self):
        with pytest.raises(ValueError):
            SanitizerConfig(query_max_length=0)

    def test_from_config_dict(self):
        config = SanitizerConfig.from_config_dict({
            'block_on_security_issues': True,
            'skip_body_fields': ['password'],
        })
        assert config.block_on_security_issues is True
        assert config.skip_body_fields == ['password']


class TestScreening:
    """Test request-level screening."""

    def test_body_sanitized_and_script_reported(self, sanitizer, make_request):
        request = make_request(method="POST", path="/api/leads", body={"notes": "<script>x</script>"})

        result = sanitizer.screen(request)

        assert result.request.body == {"notes": ""}
        assert result.issues == ["Potential script injection detected"]
        assert result.findings[0].location == "body"
        assert result.findings[0].field == "notes"

    def test_original_request_untouched(self, sanitizer, make_request):
        request = make_request(method="POST", body={"notes": " x "})
        sanitizer.screen(request)
        assert request.body == {"notes": " x "}

    def test_per_location_caps(self, sanitizer, make_request):
        request = make_request(
            method="POST",
            query={"q": "q" * 600},
            body={"text": "b" * 12000},
            path_params={"id": "p" * 300},
        )
        result = sanitizer.screen(request)
        assert len(result.request.query["q"]) == 500
        assert len(result.request.body["text"]) == 10000
        assert len(result.request.path_params["id"]) == 200

    def test_password_not_sanitized_or_classified(self, sanitizer, make_request):
        request = make_request(method="POST", body={"password": "p@ss'; --", "email": "a@b.co"})
        result = sanitizer.screen(request)
        assert result.request.body["password"] == "p@ss'; --"
        assert result.findings == []

    def test_nested_findings_have_paths(self, sanitizer, make_request):
        request = make_request(method="POST", body={"items": [{"path": "../secret"}]})
        result = sanitizer.screen(request)
        assert result.findings[0].field == "items[0].path"

    def test_suspicious_filename_dropped(self, sanitizer, make_request):
        request = make_request(method="POST", files={"avatar": "../../x.png", "doc": " cv.pdf "})
        result = sanitizer.screen(request)
        assert result.request.files == {"doc": "cv.pdf"}
        assert result.dropped_files == ["avatar"]

    def test_events_emitted(self, sanitizer, audit, make_request):
        request = make_request(method="POST", body={"a": "<script>x</script>", "b": "' OR 1=1"})
        sanitizer.screen(request)
        kinds = [event.kind for event in audit.recent()]
        assert kinds[0] == EventKind.SUSPICIOUS_PAYLOAD
        assert EventKind.XSS_ATTEMPT in kinds
        assert EventKind.SQL_INJECTION_ATTEMPT in kinds
        assert audit.count(EventKind.SUSPICIOUS_PAYLOAD) == 1

    def test_clean_request_emits_nothing(self, sanitizer, audit, make_request):
        sanitizer.screen(make_request(method="POST", body={"name": "Jane"}))
        assert len(audit) == 0
