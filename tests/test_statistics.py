"""
CEIBA — Statistics Aggregation Tests
====================================
"""

import datetime

from app.reporting.statistics import (
    IncidentRecord, ReportStatistics, age_bucket, action_type_label, aggregate, argmax,
)

START = datetime.datetime(2024, 7, 1)
END = datetime.datetime(2024, 7, 8)


def _rec(n, crime="Violencia familiar", zone="Centro", age=30, day=1, **kw):
    return IncidentRecord(id=n, created_at=datetime.datetime(2024, 7, day, 10), crime_type=crime,
                          zone=zone, age=age, **kw)


MAP_FIELDS = ("by_crime_type", "by_zone", "by_age_bucket", "by_sex",
              "by_attention_type", "by_action_type")
COUNT_FIELDS = ("total_count", "lgbtq_count", "migrant_count", "street_situation_count",
                "disability_count", "delivered_count", "draft_count", "with_transfer",
                "without_transfer", "transfer_not_applicable")


class TestAggregate:

    def test_empty_input(self):
        stats = aggregate([], START, END)
        assert stats.total_count == 0
        for name in MAP_FIELDS:
            assert getattr(stats, name) == {}
        assert stats.most_frequent_crime == ""
        assert stats.most_active_zone == ""

    def test_counts_and_flags(self):
        records = [
            _rec(1, age=16, lgbtq=True, sex="Mujer"),
            _rec(2, crime="Acoso sexual", zone="Norte", age=22, migrant=True, sex="Mujer"),
            _rec(3, age=70, street_situation=True, disability=True, sex="Hombre",
                 state=0, transfer=1, action_type=2, attention_type="Psicológica"),
        ]
        stats = aggregate(records, START, END)
        assert stats.total_count == 3
        assert stats.by_crime_type == {"Violencia familiar": 2, "Acoso sexual": 1}
        assert stats.by_zone == {"Centro": 2, "Norte": 1}
        assert stats.by_age_bucket == {"0-17": 1, "18-25": 1, "66+": 1}
        assert stats.by_sex == {"Mujer": 2, "Hombre": 1}
        assert stats.by_action_type == {"Capacitación": 1}
        assert stats.by_attention_type == {"Psicológica": 1}
        assert (stats.lgbtq_count, stats.migrant_count) == (1, 1)
        assert (stats.street_situation_count, stats.disability_count) == (1, 1)
        assert (stats.delivered_count, stats.draft_count) == (2, 1)
        assert stats.with_transfer == 1
        assert stats.most_frequent_crime == "Violencia familiar"
        assert stats.most_active_zone == "Centro"

    def test_period_is_half_open(self):
        inside = IncidentRecord(id=1, created_at=START)
        at_end = IncidentRecord(id=2, created_at=END)
        before = IncidentRecord(id=3, created_at=START - datetime.timedelta(seconds=1))
        stats = aggregate([inside, at_end, before], START, END)
        assert stats.total_count == 1

    def test_missing_zone_and_age_are_not_bucketed(self):
        stats = aggregate([_rec(1, zone=None, age=None)], START, END)
        assert stats.total_count == 1
        assert stats.by_zone == {}
        assert stats.by_age_bucket == {}

    def test_blank_crime_type_is_not_counted(self):
        records = [_rec(1, crime=""), _rec(2, crime=""), _rec(3, crime="Robo"), _rec(4, crime="Robo")]
        stats = aggregate(records, START, END)
        assert stats.total_count == 4
        assert stats.by_crime_type == {"Robo": 2}
        assert stats.most_frequent_crime == "Robo"

    def test_tie_break_prefers_smallest_key(self):
        records = [_rec(i, crime=c, zone=z) for i, (c, z) in enumerate(
            [("B", "Sur"), ("A", "Norte"), ("B", "Norte"), ("A", "Sur"), ("B", "Sur"), ("A", "Norte")])]
        stats = aggregate(records, START, END)
        assert stats.by_crime_type == {"A": 3, "B": 3}
        assert stats.most_frequent_crime == "A"
        assert stats.most_active_zone == "Norte"

    def test_additive_over_disjoint_sets(self):
        first = [_rec(1, day=1, lgbtq=True), _rec(2, crime="Acoso sexual", zone="Norte", day=2, age=40)]
        second = [_rec(3, day=3, age=17, migrant=True, transfer=2),
                  _rec(4, crime="Acoso sexual", zone="Sur", day=4, state=0, action_type=1)]
        a = aggregate(first, START, END)
        b = aggregate(second, START, END)
        both = aggregate(first + second, START, END)

        for name in COUNT_FIELDS:
            assert getattr(both, name) == getattr(a, name) + getattr(b, name), name
        for name in MAP_FIELDS:
            left, right = getattr(a, name), getattr(b, name)
            summed = {k: left.get(k, 0) + right.get(k, 0) for k in set(left) | set(right)}
            assert getattr(both, name) == summed, name


class TestHelpers:

    def test_age_buckets(self):
        assert age_bucket(0) == "0-17"
        assert age_bucket(17) == "0-17"
        assert age_bucket(18) == "18-25"
        assert age_bucket(35) == "26-35"
        assert age_bucket(50) == "36-50"
        assert age_bucket(65) == "51-65"
        assert age_bucket(66) == "66+"
        assert age_bucket(None) is None
        assert age_bucket(-1) is None

    def test_action_labels(self):
        assert action_type_label(1) == "ATOS"
        assert action_type_label(3) == "Prevención"
        assert action_type_label(9) == "Otro"

    def test_argmax_empty(self):
        assert argmax({}) == ""

    def test_json_round_trip_keeps_maps(self):
        stats = aggregate([_rec(1)], START, END)
        restored = ReportStatistics.from_json(stats.to_json())
        assert restored == stats
        assert ReportStatistics.from_json("") == ReportStatistics()
