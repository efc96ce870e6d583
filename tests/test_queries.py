"""Read-side visibility, filtering and ordering."""

from datetime import timedelta

import pytest

from errors import Forbidden, NotFound
from queries import (
    page,
    petition_for,
    petition_stats,
    petitions_for,
    present_petition,
    recent_first,
    report_for,
    report_stats,
    reports_for,
)
from schemas import Petition

from conftest import make_identity


def ids(docs):
    return [d["id"] for d in docs]


class TestPetitionVisibility:
    def test_pending_petition_hidden_until_approved(self, moderation, store, petition_factory, admin, other_citizen, clock):
        petition = petition_factory()

        assert petition.id not in ids(petitions_for(store, other_citizen, clock()))
        assert petition.id not in ids(petitions_for(store, None, clock()))

        moderation.review_petition(admin, petition.id, "approved")
        assert petition.id in ids(petitions_for(store, other_citizen, clock()))
        assert petition.id in ids(petitions_for(store, None, clock()))

    @pytest.mark.parametrize("decision", [None, "rejected"])
    def test_unapproved_never_listed_for_outsiders(self, moderation, store, petition_factory, admin, citizen, clock, decision):
        petition = petition_factory()
        if decision:
            moderation.review_petition(admin, petition.id, decision)
        outsider = make_identity("citizen")

        assert petition.id not in ids(petitions_for(store, outsider, clock()))
        assert petition.id not in ids(petitions_for(store, outsider, clock(), q="park"))
        assert petition.id in ids(petitions_for(store, citizen, clock()))
        assert petition.id in ids(petitions_for(store, admin, clock()))

    def test_detail_read_hides_unapproved(self, store, petition_factory, citizen, other_citizen, admin):
        petition = petition_factory()
        with pytest.raises(NotFound):
            petition_for(store, other_citizen, petition.id)
        with pytest.raises(NotFound):
            petition_for(store, None, petition.id)
        assert petition_for(store, citizen, petition.id).id == petition.id
        assert petition_for(store, admin, petition.id).id == petition.id

    def test_review_notes_only_for_creator_and_admin(self, moderation, petition_factory, admin, citizen, other_citizen, clock):
        petition = moderation.review_petition(admin, petition_factory().id, "approved", "internal remark")
        assert present_petition(petition, citizen, clock())["adminReview"]["notes"] == "internal remark"
        assert present_petition(petition, admin, clock())["adminReview"]["notes"] == "internal remark"
        assert "notes" not in present_petition(petition, other_citizen, clock())["adminReview"]
        assert "notes" not in present_petition(petition, None, clock())["adminReview"]


class TestPetitionFilters:
    def test_filters(self, moderation, store, petition_factory, admin, clock, citizen):
        park = petition_factory(title="Park lights", category="Infrastructure")
        bins = petition_factory(title="More recycling bins", category="Environment", days=2)
        for p in (park, bins):
            moderation.review_petition(admin, p.id, "approved")

        assert ids(petitions_for(store, None, clock(), category="Environment")) == [bins.id]
        assert ids(petitions_for(store, None, clock(), q="RECYCLING")) == [bins.id]
        assert ids(petitions_for(store, citizen, clock(), mine=True, category="Infrastructure")) == [park.id]
        assert list(petitions_for(store, None, clock(), mine=True)) == []

        clock.advance(days=3)
        assert ids(petitions_for(store, None, clock(), status="expired")) == [bins.id]
        assert ids(petitions_for(store, None, clock(), status="active")) == [park.id]

    def test_review_filter(self, moderation, store, petition_factory, admin, clock):
        pending = petition_factory()
        approved = petition_factory()
        moderation.review_petition(admin, approved.id, "approved")
        assert ids(petitions_for(store, admin, clock(), review="pending")) == [pending.id]

    def test_present_derived_fields(self, moderation, petition_factory, other_citizen, clock):
        petition = petition_factory(goal=10)
        for who in [other_citizen] + [make_identity() for _ in range(2)]:
            petition = moderation.sign_petition(who, petition.id)
        data = present_petition(petition, other_citizen, clock())
        assert data["signatureCount"] == 3
        assert data["percentageComplete"] == 30
        assert data["hasSigned"] is True
        assert "version" not in data

        clock.advance(days=31)
        assert present_petition(petition, None, clock())["status"] == "expired"

    def test_stats(self, moderation, store, petition_factory, admin, clock):
        petition_factory()
        moderation.review_petition(admin, petition_factory().id, "rejected")
        moderation.review_petition(admin, petition_factory().id, "approved")
        stats = petition_stats(store, clock())
        assert stats["total"] == 3
        assert stats["status"]["rejected"] == 1
        assert stats["status"]["active"] == 2
        assert stats["review"] == {"pending": 1, "approved": 1, "rejected": 1}


class TestReports:
    def test_citizens_see_only_their_own(self, store, report_factory, citizen, other_citizen, admin):
        mine = report_factory(citizen)
        theirs = report_factory(other_citizen)
        assert ids(reports_for(store, citizen)) == [mine.id]
        assert ids(reports_for(store, other_citizen)) == [theirs.id]
        assert ids(reports_for(store, admin)) == [mine.id, theirs.id]
        assert ids(reports_for(store, admin, mine=True)) == []

    def test_detail_access(self, store, report_factory, citizen, other_citizen, admin):
        report = report_factory(citizen)
        assert report_for(store, citizen, report.id).id == report.id
        assert report_for(store, admin, report.id).id == report.id
        with pytest.raises(Forbidden):
            report_for(store, other_citizen, report.id)

    def test_filters_and_search(self, moderation, store, report_factory, admin):
        noise = report_factory(category="Noise", location="Block C")
        parking = report_factory(title="Car on the lawn", category="Parking", location="Gate 2", report_type="complaint")
        moderation.update_report_status(admin, noise.id, "resolved", "done")

        assert ids(reports_for(store, admin, status="resolved")) == [noise.id]
        assert ids(reports_for(store, admin, type="complaint")) == [parking.id]
        assert ids(reports_for(store, admin, q="gate")) == [parking.id]
        assert ids(reports_for(store, admin, q="noise")) == [noise.id]
        assert ids(reports_for(store, admin, category="Parking", status="pending")) == [parking.id]

    def test_stats(self, moderation, store, report_factory, admin, clock):
        a = report_factory(category="Noise")
        report_factory(category="Noise")
        c = report_factory(category="Parking")
        clock.advance(minutes=5)
        moderation.update_report_status(admin, a.id, "resolved", "done")
        clock.advance(minutes=5)
        moderation.update_report_status(admin, c.id, "in-progress")

        stats = report_stats(store)
        assert stats["total"] == 3
        assert (stats["pending"], stats["inProgress"], stats["resolved"], stats["rejected"]) == (1, 1, 1, 0)
        assert stats["categories"][0] == {"category": "Noise", "count": 2}
        assert [r["id"] for r in stats["recentActivity"]][:2] == [c.id, a.id]


class TestOrdering:
    def test_recent_first_is_stable(self, store, petition_factory, clock):
        first = petition_factory(title="first")
        second = petition_factory(title="second")
        clock.advance(minutes=1)
        third = petition_factory(title="third")

        ordered = recent_first(store.query("petition"))
        assert ids(ordered) == [third.id, first.id, second.id]

    def test_page(self):
        docs = [{"id": str(i)} for i in range(5)]
        assert ids(page(docs, 1, 2)) == ["1", "2"]
        assert ids(page(docs, 3)) == ["3", "4"]

    def test_results_are_model_compatible(self, store, petition_factory, clock):
        petition_factory()
        for doc in petitions_for(store, make_identity("admin"), clock()):
            assert Petition.model_validate(doc).effective_status(clock()) == "active"
