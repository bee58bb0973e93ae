"""
Unit tests for storage layer.

Tests schema creation, accounts, content search and the usage ledger.
"""

import os
import sqlite3
import tempfile
from datetime import datetime, timedelta

import pytest

from atlas_ai.core.costs import SubscriptionTier
from atlas_ai.core.query import StructuredQuery, UserPreferences
from atlas_ai.storage.db import get_connection
from atlas_ai.storage.models import ContentItem, UsageRecord
from atlas_ai.storage.repository import (
    AccountRepository,
    ContentRepository,
    fetch_usage_history,
    get_popular_topics,
    get_user_query_stats,
    initialize_schema,
    insert_usage_record,
)


NOW = datetime(2024, 3, 11, 9, 0, 0)


def _record(user_id="student", offset_seconds=0, **overrides):
    values = dict(
        timestamp=NOW + timedelta(seconds=offset_seconds),
        user_id=user_id,
        raw_query="gcse maths notes on algebra",
        operation="search",
        exam_type="GCSE",
        exam_board="AQA",
        subject="Mathematics",
        topic="algebra",
        request_type="notes",
        tokens_charged=1,
        result_count=3,
        latency_ms=40,
    )
    values.update(overrides)
    return UsageRecord(**values)


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify tables are created correctly."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                tables = {
                    row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
                }
                assert {"users", "content", "usage_record"} <= tables

                columns = [col[1] for col in conn.execute("PRAGMA table_info(users)")]
                assert columns == [
                    "user_id", "tier", "balance", "last_refreshed_at",
                    "pref_exam_type", "pref_exam_board", "pref_subjects",
                ]
            finally:
                conn.close()


class TestAccountRepository:
    """Test account persistence."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.temp_dir.name, "test.db")
        initialize_schema(self.db_path)
        self.accounts = AccountRepository(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        self.temp_dir.cleanup()

    def test_create_user_defaults_to_quota(self):
        """Test new users start with their tier quota."""
        free = self.accounts.create_user("free-user")
        premium = self.accounts.create_user("premium-user", tier=SubscriptionTier.PREMIUM)

        assert free.balance == 15
        assert premium.balance == 50
        assert self.accounts.get_account("premium-user").tier is SubscriptionTier.PREMIUM

    def test_duplicate_user_rejected(self):
        """Test user ids are unique."""
        self.accounts.create_user("student")

        with pytest.raises(sqlite3.IntegrityError):
            self.accounts.create_user("student")

    def test_preferences_round_trip(self):
        """Test stored preferences come back intact."""
        preferences = UserPreferences(exam_type="A-level", exam_board="OCR", subjects=["Physics", "Maths"])
        self.accounts.create_user("student", preferences=preferences)

        assert self.accounts.get_preferences("student") == preferences
        assert self.accounts.get_preferences("ghost") is None
        assert self.accounts.get_account("ghost") is None

    def test_try_debit(self):
        """Test the conditional debit never goes below zero."""
        self.accounts.create_user("student", balance=3)

        assert self.accounts.try_debit("student", 2) == 1
        assert self.accounts.try_debit("student", 2) is None
        assert self.accounts.get_account("student").balance == 1
        assert self.accounts.try_debit("ghost", 1) is None

    def test_save_refresh_is_compare_and_swap(self):
        """Test a refill based on a stale timestamp is not written."""
        old = NOW - timedelta(days=8)
        account = self.accounts.create_user("student", balance=0, last_refreshed_at=old)
        account.balance = 15
        account.last_refreshed_at = NOW

        assert self.accounts.save_refresh(account, old) is True
        assert self.accounts.save_refresh(account, old) is False
        assert self.accounts.get_account("student").last_refreshed_at == NOW

    def test_list_user_ids(self):
        """Test user ids are listed in order."""
        self.accounts.create_user("b")
        self.accounts.create_user("a")

        assert self.accounts.list_user_ids() == ["a", "b"]


class TestContentRepository:
    """Test content search filters."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.temp_dir.name, "test.db")
        initialize_schema(self.db_path)
        self.content = ContentRepository(self.db_path)

        self.content.add_content(ContentItem(
            title="Algebra Notes", description="Expanding brackets", content_type="notes",
            exam_board="AQA", exam_type="GCSE", subject="Mathematics", topics=["algebra"], views=5,
        ))
        self.content.add_content(ContentItem(
            title="Maths Paper 1", description="Calculator paper", content_type="pastPaper",
            exam_board="AQA", exam_type="GCSE", subject="Mathematics", topics=["algebra", "geometry"], views=9,
        ))
        self.content.add_content(ContentItem(
            title="100% Statistics", description="Averages", content_type="notes",
            exam_board="OCR", exam_type="A-level", subject="Further Mathematics", topics=["statistics"],
        ))

    def teardown_method(self):
        """Clean up test environment."""
        self.temp_dir.cleanup()

    def _titles(self, query, **kwargs):
        return [item.title for item in self.content.search(query, **kwargs)]

    def test_unfiltered_search_orders_by_views(self):
        """Test an empty query returns everything, most viewed first."""
        assert self._titles(StructuredQuery()) == ["Maths Paper 1", "Algebra Notes", "100% Statistics"]

    def test_exact_and_substring_filters(self):
        """Test exam fields match exactly and subject as a substring."""
        assert self._titles(StructuredQuery(subject="mathematics")) == [
            "Maths Paper 1", "Algebra Notes", "100% Statistics"
        ]
        assert self._titles(StructuredQuery(exam_board="AQA", subject="Mathematics", request_type="notes")) == [
            "Algebra Notes"
        ]

    def test_general_request_type_applies_no_filter(self):
        """Test 'general' does not restrict content type."""
        assert len(self._titles(StructuredQuery(exam_board="AQA", request_type="general"))) == 2

    def test_topic_matches_topics_title_or_description(self):
        """Test topic is searched across topics, title and description."""
        assert self._titles(StructuredQuery(topic="geometry")) == ["Maths Paper 1"]
        assert self._titles(StructuredQuery(topic="brackets")) == ["Algebra Notes"]

    def test_like_wildcards_escaped(self):
        """Test '%' in a topic is matched literally."""
        assert self._titles(StructuredQuery(topic="100%")) == ["100% Statistics"]
        assert self._titles(StructuredQuery(topic="%")) == ["100% Statistics"]

    def test_pagination(self):
        """Test page and limit slice the ordered results."""
        assert self._titles(StructuredQuery(), page=2, limit=2) == ["100% Statistics"]
        with pytest.raises(ValueError):
            self.content.search(StructuredQuery(), page=0)

    def test_views_and_popular(self):
        """Test view counting and the popular listing."""
        item_id = self.content.search(StructuredQuery(topic="statistics"))[0].content_id
        for _ in range(10):
            self.content.increment_views(item_id)

        assert self.content.get_content(item_id).views == 10
        assert [item.title for item in self.content.popular(1)] == ["100% Statistics"]
        assert self.content.get_content(999) is None


class TestUsageLedger:
    """Test usage record storage and aggregation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.temp_dir.name, "test.db")
        initialize_schema(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        self.temp_dir.cleanup()

    def test_insert_and_fetch_newest_first(self):
        """Test records come back newest first with every field intact."""
        insert_usage_record(_record(offset_seconds=0, topic="algebra"), self.db_path)
        insert_usage_record(_record(offset_seconds=5, topic="vectors", cache_hit=True), self.db_path)

        records = fetch_usage_history("student", db_path=self.db_path)

        assert [record.topic for record in records] == ["vectors", "algebra"]
        assert records[0].cache_hit is True
        assert records[0].timestamp == NOW + timedelta(seconds=5)
        assert records[1] == _record(offset_seconds=0, topic="algebra")

    def test_history_pagination(self):
        """Test history pages do not overlap."""
        for offset in range(5):
            insert_usage_record(_record(offset_seconds=offset), self.db_path)

        first = fetch_usage_history("student", limit=2, page=1, db_path=self.db_path)
        third = fetch_usage_history("student", limit=2, page=3, db_path=self.db_path)

        assert [r.timestamp for r in first] == [NOW + timedelta(seconds=4), NOW + timedelta(seconds=3)]
        assert [r.timestamp for r in third] == [NOW]

    def test_user_stats(self):
        """Test aggregate statistics for one user."""
        insert_usage_record(_record(tokens_charged=1, latency_ms=20), self.db_path)
        insert_usage_record(_record(tokens_charged=3, latency_ms=60, successful=False, error_message="x"), self.db_path)
        insert_usage_record(_record(user_id="other", tokens_charged=2), self.db_path)

        stats = get_user_query_stats("student", db_path=self.db_path)

        assert stats == {
            "total_queries": 2,
            "total_tokens_used": 4,
            "avg_latency_ms": 40.0,
            "success_rate": 0.5,
        }

    def test_user_stats_empty(self):
        """Test statistics for a user with no records."""
        stats = get_user_query_stats("nobody", db_path=self.db_path)

        assert stats["total_queries"] == 0
        assert stats["success_rate"] == 0.0

    def test_popular_topics(self):
        """Test topics are ranked by request count within a subject."""
        for topic in ["algebra", "algebra", "vectors", None]:
            insert_usage_record(_record(topic=topic), self.db_path)
        insert_usage_record(_record(subject="Physics", topic="forces"), self.db_path)

        assert get_popular_topics("Mathematics", db_path=self.db_path) == [("algebra", 2), ("vectors", 1)]
        assert get_popular_topics("Mathematics", limit=1, db_path=self.db_path) == [("algebra", 2)]
