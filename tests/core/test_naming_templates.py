"""Tests for child naming templates."""

from __future__ import annotations

from datetime import datetime

import pytest

from promptcascade.core.actions.naming import (
    child_name,
    format_date,
    has_template_code,
    number_to_alpha,
    process_naming_template,
)

DATE = datetime(2026, 1, 5, 14, 3, 9)


class TestNumberToAlpha:
    """Tests for number_to_alpha."""

    @pytest.mark.parametrize(("index", "expected"), [(0, "A"), (25, "Z"), (26, "AA"), (27, "AB"), (701, "ZZ"), (702, "AAA")])
    def test_sequence(self, index, expected):
        """Indexes map to spreadsheet-style letters."""
        assert number_to_alpha(index) == expected

    def test_lowercase(self):
        """Lowercase letters on request."""
        assert number_to_alpha(2, uppercase=False) == "c"


class TestNamingTemplate:
    """Tests for process_naming_template and child_name."""

    def test_sequence_padding(self):
        """{{n}} codes pad to their length."""
        assert process_naming_template("Part {{n}}/{{nn}}/{{nnn}}", 8) == "Part 9/09/009"

    def test_alpha_codes(self):
        """{{A}} and {{a}} give letters."""
        assert process_naming_template("Appendix {{A}}{{a}}", 1) == "Appendix Bb"

    def test_date_code(self):
        """{{date:...}} formats the given date."""
        assert process_naming_template("Log {{date:yyyy-MM-dd HH:mm}}", 0, DATE) == "Log 2026-01-05 14:03"

    def test_date_tokens(self):
        """Long tokens win over their prefixes."""
        assert format_date(DATE, "EEEE d MMMM yy") == "Monday 5 January 26"
        assert format_date(DATE, "EEE M/d H:mm:ss") == "Mon 1/5 14:03:09"

    def test_child_name_without_template(self):
        """Plain prefixes get a 1-based number."""
        assert child_name("Chapter", 0) == "Chapter 1"
        assert not has_template_code("Chapter")

    def test_child_name_with_template(self):
        """Template prefixes are expanded instead."""
        assert child_name("Q{{n}}", 3) == "Q4"
        assert has_template_code("Q{{n}}")

    def test_empty_template(self):
        """An empty template stays empty."""
        assert process_naming_template("") == ""
