"""
Tokenizer Tests - Verify name tokenization.
"""

from share_index.tokenizer import tokenize


class TestTokenize:
    """Tests for tokenize()."""

    def test_splits_on_separators(self):
        assert tokenize("Annual_Report-2024.PDF") == ("annual", "report", "2024", "pdf")

    def test_lowercases(self):
        assert tokenize("README") == ("readme",)

    def test_deduplicates_keeping_order(self):
        assert tokenize("report report.v2.report") == ("report", "v2")

    def test_keeps_cjk_runs(self):
        assert tokenize("年度报告 2024.docx") == ("年度报告", "2024", "docx")

    def test_empty_and_separator_only(self):
        assert tokenize("") == ()
        assert tokenize("._-  ") == ()

    def test_query_and_name_tokenize_alike(self):
        """Queries go through the same function as names."""
        assert set(tokenize("annual report")) <= set(tokenize("annual_report.txt"))
