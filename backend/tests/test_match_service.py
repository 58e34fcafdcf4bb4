"""
Match Ranker Tests

- eligibility filtering (inactive, incompatible, out of range)
- deterministic scoring and ordering
- service entry point: hospital scoping, persistence, saved matches
"""

import asyncio
from datetime import timedelta

import pytest

from donorlink.exceptions import NotFoundError
from donorlink.models.match import Match
from donorlink.services import directory_service, match_service
from donorlink.services.compatibility import can_donate
from donorlink.services.match_service import MatchScoring, rank_donors

from factories import NOW, OTHER_HOSPITAL_ID, HOSPITAL_ID, make_donor, make_recipient, seed

SCORING = MatchScoring()


class TestRankDonors:

    def test_ab_positive_recipient_scenario(self):
        """O- and AB+ donors match, inactive A+ donor is excluded, exact ranks first"""
        recipient = make_recipient(group="AB+")
        donors = [
            make_donor("d-oneg", "O-"),
            make_donor("d-abpos", "AB+"),
            make_donor("d-apos", "A+", is_active=False),
        ]

        matches = rank_donors(recipient, donors, scoring=SCORING, now=NOW)

        assert [m.donor_id for m in matches] == ["d-abpos", "d-oneg"]
        assert matches[0].match_score >= matches[1].match_score
        assert matches[0].compatibility_label == "AB+ → AB+"
        assert matches[1].compatibility_label == "O- → AB+"

    def test_exact_and_cross_base_scores(self):
        recipient = make_recipient(group="A+")
        matches = rank_donors(recipient, [make_donor("a", "A+"), make_donor("o", "O-")], scoring=SCORING, now=NOW)
        scores = {m.donor_id: m.match_score for m in matches}
        assert scores == {"a": 100, "o": 80}

    def test_incompatible_donors_never_match(self):
        recipient = make_recipient(group="O-")
        donors = [make_donor(f"d{i}", g) for i, g in enumerate(["O+", "A-", "B+", "AB-", "AB+", "O-"])]

        matches = rank_donors(recipient, donors, scoring=SCORING, now=NOW)

        assert [m.donor_id for m in matches] == ["d5"]
        for match in matches:
            donor = next(d for d in donors if d.id == match.donor_id)
            assert can_donate(donor.blood_group, recipient.blood_group)

    def test_distance_bound_excludes_far_donors(self):
        recipient = make_recipient(group="B+")
        donors = [make_donor("near", "B+", km=10), make_donor("far", "B+", km=60)]

        matches = rank_donors(recipient, donors, max_distance_km=50, scoring=SCORING, now=NOW)

        assert [m.donor_id for m in matches] == ["near"]
        assert all(m.distance_km <= 50 for m in matches)

    def test_distance_penalty_is_linear_then_capped(self):
        recipient = make_recipient(group="B+")
        donors = [make_donor("ten", "B+", km=10), make_donor("remote", "B+", km=500)]
        scores = {m.donor_id: m.match_score for m in rank_donors(recipient, donors, scoring=SCORING, now=NOW)}
        assert scores["ten"] == 96
        assert scores["remote"] == 60

    def test_recent_donation_is_penalised(self):
        recipient = make_recipient(group="O+")
        donors = [
            make_donor("rested", "O+", last_donation_date=NOW - timedelta(days=200)),
            make_donor("recent", "O+", last_donation_date=NOW - timedelta(days=45)),
        ]
        matches = rank_donors(recipient, donors, scoring=SCORING, now=NOW)

        assert [m.donor_id for m in matches] == ["rested", "recent"]
        assert matches[1].match_score == 85
        assert "donated recently" in matches[1].reason

    def test_ties_break_on_distance_then_id(self):
        recipient = make_recipient(group="AB+")
        donors = [
            make_donor("z-close", "AB+", km=0.1),
            make_donor("b-far", "AB+", km=0.9),
            make_donor("a-far", "AB+", km=0.9),
        ]
        matches = rank_donors(recipient, donors, scoring=SCORING, now=NOW)

        assert len({m.match_score for m in matches}) == 1
        assert [m.donor_id for m in matches] == ["z-close", "a-far", "b-far"]

    def test_deterministic_across_input_order(self):
        recipient = make_recipient(group="AB+")
        donors = [make_donor(f"d{i}", g, km=i * 3.7) for i, g in enumerate(["O-", "A+", "B-", "AB+", "O+", "AB-"])]

        first = rank_donors(recipient, donors, scoring=SCORING, now=NOW)
        second = rank_donors(recipient, list(reversed(donors)), scoring=SCORING, now=NOW)

        assert [(m.id, m.match_score, m.distance_km) for m in first] == \
            [(m.id, m.match_score, m.distance_km) for m in second]

    def test_empty_pool_is_empty_result(self):
        assert rank_donors(make_recipient(), [], scoring=SCORING, now=NOW) == []

    def test_quality_label(self):
        matches = rank_donors(make_recipient(group="AB+"), [make_donor("d", "AB+")], scoring=SCORING, now=NOW)
        assert matches[0].quality == "Excellent"


class TestFindMatches:

    def test_unknown_recipient(self, store):
        with pytest.raises(NotFoundError):
            asyncio.run(match_service.find_matches(store, hospital_id=HOSPITAL_ID, recipient_id="nope"))

    def test_recipient_of_other_hospital_is_not_found(self, store):
        async def scenario():
            await seed(store, recipients=[make_recipient("r-other", hospital_id=OTHER_HOSPITAL_ID)])
            await match_service.find_matches(store, hospital_id=HOSPITAL_ID, recipient_id="r-other")

        with pytest.raises(NotFoundError):
            asyncio.run(scenario())

    def test_persist_writes_matches_for_audit(self, store):
        async def scenario():
            await seed(
                store,
                recipients=[make_recipient("r1", group="AB+")],
                donors=[make_donor("d1", "O-", km=5), make_donor("d2", "AB+", km=20)],
            )
            ranked = await match_service.find_matches(
                store, hospital_id=HOSPITAL_ID, recipient_id="r1", persist=True, scoring=SCORING, now=NOW,
            )
            stored = await store.scan_by_prefix(Match.prefix_for_recipient("r1"))
            saved = await match_service.get_saved_matches(store, hospital_id=HOSPITAL_ID, recipient_id="r1")
            return ranked, stored, saved

        ranked, stored, saved = asyncio.run(scenario())

        assert len(stored) == 2
        assert [m.donor_id for m in saved] == [m.donor_id for m in ranked]

    def test_not_persisted_by_default(self, store):
        async def scenario():
            await seed(store, recipients=[make_recipient("r1")], donors=[make_donor("d1", "O-")])
            await match_service.find_matches(store, hospital_id=HOSPITAL_ID, recipient_id="r1")
            return await store.scan_by_prefix("match:")

        assert asyncio.run(scenario()) == []

    def test_match_ids_are_stable(self, store):
        async def scenario():
            await seed(store, recipients=[make_recipient("r1")], donors=[make_donor("d1", "O-")])
            first = await match_service.find_matches(store, hospital_id=HOSPITAL_ID, recipient_id="r1")
            second = await match_service.find_matches(store, hospital_id=HOSPITAL_ID, recipient_id="r1")
            return first, second

        first, second = asyncio.run(scenario())
        assert first[0].id == second[0].id

    def test_saved_ranking_drops_donors_no_longer_ranked(self, store):
        """Re-persisting replaces the saved list; a deactivated donor disappears from it"""
        async def scenario():
            await seed(
                store,
                recipients=[make_recipient("r1", group="AB+")],
                donors=[make_donor("d1", "O-", km=5), make_donor("d2", "AB+", km=20)],
            )
            await match_service.find_matches(
                store, hospital_id=HOSPITAL_ID, recipient_id="r1", persist=True, now=NOW,
            )
            await directory_service.save_donor(store, make_donor("d1", "O-", km=5, is_active=False))
            latest = await match_service.find_matches(
                store, hospital_id=HOSPITAL_ID, recipient_id="r1", persist=True, now=NOW,
            )
            saved = await match_service.get_saved_matches(store, hospital_id=HOSPITAL_ID, recipient_id="r1")
            return latest, saved

        latest, saved = asyncio.run(scenario())

        assert [m.donor_id for m in latest] == ["d2"]
        assert [m.donor_id for m in saved] == ["d2"]

    def test_saved_ranking_follows_radius_of_latest_run(self, store):
        async def scenario():
            await seed(
                store,
                recipients=[make_recipient("r1", group="AB+")],
                donors=[make_donor("d1", "O-", km=5), make_donor("d2", "AB+", km=20)],
            )
            await match_service.find_matches(store, hospital_id=HOSPITAL_ID, recipient_id="r1", persist=True)
            await match_service.find_matches(
                store, hospital_id=HOSPITAL_ID, recipient_id="r1", max_distance_km=10, persist=True,
            )
            return await store.scan_by_prefix(Match.prefix_for_recipient("r1"))

        assert [v["donor_id"] for v in asyncio.run(scenario())] == ["d1"]
