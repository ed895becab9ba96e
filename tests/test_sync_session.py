"""Tests for the client synchronization session.

Sessions run against the real SQLite-backed stores through LocalStoreGateway;
coroutines are driven with asyncio.run.
"""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from civicmap.core.config import settings
from civicmap.domain import errors
from civicmap.domain.models import (
    Identity,
    Location,
    ProfileDefaults,
    Report,
    ReportCategory,
    ReportDraft,
    ReportMode,
    ReportStatus,
)
from civicmap.domain.services.geolocation import StaticGeolocationSource
from civicmap.domain.services.identity import InMemoryIdentityProvider
from civicmap.domain.services.photo_service import SUGGESTION_PLACEHOLDER_PHOTO
from civicmap.sync import LocalStoreGateway, SessionState, SyncSession, UserMode, ViewState

LILLE = Location(lat=50.6292, lng=3.0573)
CAMILLE = Identity(uid="citizen-1", display_name="Camille")
NOA = Identity(uid="citizen-2", display_name="Noa")


@pytest.fixture
def gateway(report_store, profile_store, leaderboard):
    return LocalStoreGateway(report_store, profile_store, leaderboard)


def make_session(gateway, user=CAMILLE, geolocation=None, **kwargs):
    provider = InMemoryIdentityProvider(user)
    if geolocation is None:
        geolocation = StaticGeolocationSource(LILLE)
    kwargs.setdefault("retry_base_seconds", 0)
    session = SyncSession(provider, gateway, geolocation, **kwargs)
    return provider, session


def suggestion(**overrides):
    data = dict(mode=ReportMode.SUGGESTION, description="More benches by the river")
    data.update(overrides)
    return ReportDraft(**data)


def furniture_report(report_id="bench-ok", reported_by="someone-else"):
    return Report(
        id=report_id,
        mode=ReportMode.FURNITURE_OK,
        category=ReportCategory.FURNITURE,
        description="Bench in good condition",
        photo="https://example.org/bench.jpg",
        location=LILLE,
        reported_by=reported_by,
    )


class TestLifecycle:

    def test_sign_in_reaches_ready(self, gateway, feed):
        async def scenario():
            _, session = make_session(gateway)
            states = []
            session.on_change = lambda s: states.append(s.state)
            await session.start()
            await session.drain()
            return session, states

        session, states = asyncio.run(scenario())
        assert session.state == SessionState.READY
        assert SessionState.LOADING_LOCATION in states
        assert session.location == LILLE
        assert session.reports == []
        assert session.profile.uid == "citizen-1"
        assert session.points == 0
        assert session.rank == 1
        assert feed.listener_count("reports") == 1
        assert feed.listener_count("profile:citizen-1") == 1

    def test_signed_out_stays_unauthenticated(self, gateway, feed):
        async def scenario():
            _, session = make_session(gateway, user=None)
            await session.start()
            await session.drain()
            return session

        session = asyncio.run(scenario())
        assert session.state == SessionState.UNAUTHENTICATED
        assert feed.listener_count("reports") == 0

    def test_sign_out_tears_down(self, gateway, feed, problem_draft):
        async def scenario():
            provider, session = make_session(gateway)
            await session.start()
            await session.submit_report(problem_draft)
            await session.drain()
            provider.sign_out()
            await session.drain()
            return session

        session = asyncio.run(scenario())
        assert session.state == SessionState.UNAUTHENTICATED
        assert session.reports == []
        assert session.profile is None
        assert session.points == 0
        assert feed.listener_count("reports") == 0
        assert feed.listener_count("profile:citizen-1") == 0

    def test_switching_user(self, gateway, profile_store):
        async def scenario():
            provider, session = make_session(gateway)
            await session.start()
            provider.sign_in(NOA)
            await session.drain()
            return session

        session = asyncio.run(scenario())
        assert session.state == SessionState.READY
        assert session.identity.uid == "citizen-2"
        assert session.profile.uid == "citizen-2"
        assert profile_store.get_profile("citizen-1") is not None

    def test_sign_out_while_locating_discards_result(self, gateway, feed):
        async def scenario():
            provider, session = make_session(
                gateway, geolocation=StaticGeolocationSource(LILLE, delay_seconds=0.2)
            )
            start = asyncio.ensure_future(session.start())
            await asyncio.sleep(0.05)
            provider.sign_out()
            await start
            await session.drain()
            return session

        session = asyncio.run(scenario())
        assert session.state == SessionState.UNAUTHENTICATED
        assert session.location is None
        assert feed.listener_count("reports") == 0

    def test_close(self, gateway, feed):
        async def scenario():
            provider, session = make_session(gateway)
            await session.start()
            await session.close()
            provider.sign_in(NOA)
            await session.drain()
            return session

        session = asyncio.run(scenario())
        assert session.state == SessionState.UNAUTHENTICATED
        assert feed.listener_count("reports") == 0


class TestSubmission:

    def test_broken_bench(self, gateway, report_store, problem_draft):
        async def scenario():
            _, session = make_session(gateway)
            await session.start()
            session.open_form()
            report = await session.submit_report(problem_draft)
            await session.drain()
            return session, report

        session, report = asyncio.run(scenario())
        assert report.status == ReportStatus.NEW
        assert report.validations == 0
        assert report.location.lat == 50.63
        assert report.location.lng == 3.06
        assert session.points == 20
        assert session.level == 0
        assert session.points_to_next_level == 80
        assert [r.id for r in session.reports] == [report.id]
        assert session.view == ViewState.IDLE
        assert session.notices[-1].level == "success"
        assert "+20 points" in session.notices[-1].message
        assert report_store.get(report.id).reported_by == "citizen-1"

    def test_suggestion_without_photo(self, gateway, report_store):
        async def scenario():
            _, session = make_session(gateway)
            await session.start()
            report = await session.submit_report(suggestion())
            await session.drain()
            return session, report

        session, report = asyncio.run(scenario())
        stored = report_store.get(report.id)
        assert stored.photo == SUGGESTION_PLACEHOLDER_PHOTO
        assert stored.type is None
        assert session.points == 10

    def test_gps_used_when_draft_has_no_location(self, gateway):
        async def scenario():
            _, session = make_session(gateway)
            await session.start()
            return await session.submit_report(suggestion())

        report = asyncio.run(scenario())
        assert (report.location.lat, report.location.lng) == (LILLE.lat, LILLE.lng)

    def test_empty_description_makes_no_store_call(self, gateway, problem_draft):
        async def scenario():
            _, session = make_session(gateway)
            await session.start()
            with patch.object(gateway, "create_report", new=AsyncMock()) as create, \
                    patch.object(gateway, "increment_points", new=AsyncMock()) as increment:
                result = await session.submit_report(problem_draft.model_copy(update={"description": ""}))
            return session, result, create, increment

        session, result, create, increment = asyncio.run(scenario())
        assert result is None
        assert isinstance(session.last_error, errors.ValidationError)
        assert session.notices[-1].level == "error"
        create.assert_not_awaited()
        increment.assert_not_awaited()

    def test_problem_without_photo_rejected_locally(self, gateway, problem_draft):
        async def scenario():
            _, session = make_session(gateway)
            await session.start()
            with patch.object(gateway, "create_report", new=AsyncMock()) as create:
                result = await session.submit_report(problem_draft.model_copy(update={"photo": None}))
            return session, result, create

        session, result, create = asyncio.run(scenario())
        assert result is None
        assert session.last_error.field == "photo"
        create.assert_not_awaited()

    def test_create_failure_skips_increment(self, gateway, profile_store, problem_draft):
        async def scenario():
            _, session = make_session(gateway)
            await session.start()
            session.open_form()
            with patch.object(gateway, "create_report", new=AsyncMock(side_effect=errors.StoreWriteError("down"))), \
                    patch.object(gateway, "increment_points", new=AsyncMock()) as increment:
                result = await session.submit_report(problem_draft)
            await session.drain()
            return session, result, increment

        session, result, increment = asyncio.run(scenario())
        assert result is None
        increment.assert_not_awaited()
        assert session.view == ViewState.FORM_OPEN
        assert session.notices[-1].message == "Could not save your report. Please try again."
        assert profile_store.get_profile("citizen-1").points == 0

    def test_increment_failure_reported(self, gateway, report_store, problem_draft):
        async def scenario():
            _, session = make_session(gateway)
            await session.start()
            with patch.object(gateway, "increment_points", new=AsyncMock(side_effect=errors.StoreWriteError("down"))):
                result = await session.submit_report(problem_draft)
            await session.drain()
            return session, result

        session, result = asyncio.run(scenario())
        assert result is None
        assert isinstance(session.last_error, errors.StoreWriteError)
        assert "points could not be awarded" in session.notices[-1].message
        assert session.points == 0
        # the report itself was stored before the increment was attempted
        assert len(report_store.list_reports()) == 1

    def test_oversized_photo_rejected_without_store_call(self, gateway, problem_draft, oversized_photo):
        async def scenario():
            _, session = make_session(gateway)
            await session.start()
            session.open_form()
            with patch.object(gateway, "create_report", new=AsyncMock()) as create:
                result = await session.submit_report(problem_draft.model_copy(update={"photo": oversized_photo}))
            return session, result, create

        session, result, create = asyncio.run(scenario())
        assert result is None
        assert isinstance(session.last_error, errors.ValidationError)
        assert session.last_error.field == "photo"
        assert session.notices[-1].level == "error"
        assert session.view == ViewState.FORM_OPEN
        create.assert_not_awaited()

    def test_signed_out_cannot_submit(self, gateway, problem_draft):
        async def scenario():
            _, session = make_session(gateway, user=None)
            await session.start()
            return session, await session.submit_report(problem_draft)

        session, result = asyncio.run(scenario())
        assert result is None
        assert session.notices[-1].level == "error"

    def test_concurrent_submissions_same_user(self, gateway, profile_store, problem_draft):
        async def scenario():
            _, first = make_session(gateway)
            _, second = make_session(gateway)
            await first.start()
            await second.start()
            await asyncio.gather(
                first.submit_report(problem_draft),
                second.submit_report(problem_draft),
                first.submit_report(suggestion()),
            )
            await first.drain()
            await second.drain()
            return first, second

        first, second = asyncio.run(scenario())
        assert profile_store.get_profile("citizen-1").points == 50
        assert first.points == second.points == 50
        assert len(first.reports) == 3


class TestLocation:

    def test_denied_location_fails_closed(self, gateway, problem_draft):
        denied = StaticGeolocationSource(error_reason=errors.LocationUnavailable.PERMISSION_DENIED)

        async def scenario():
            _, session = make_session(gateway, geolocation=denied)
            await session.start()
            result = await session.submit_report(problem_draft.model_copy(update={"location": None}))
            return session, result

        session, result = asyncio.run(scenario())
        assert session.state == SessionState.READY
        assert session.location is None
        assert session.location_error == "Location access was denied."
        assert result is None
        assert isinstance(session.last_error, errors.LocationUnavailable)

    def test_timeout_then_retry(self, gateway):
        source = StaticGeolocationSource(LILLE, delay_seconds=0.3)

        async def scenario():
            _, session = make_session(gateway, geolocation=source, location_timeout_ms=20)
            await session.start()
            first = session.location
            source.delay_seconds = 0
            ok = await session.retry_location()
            return session, first, ok

        session, first, ok = asyncio.run(scenario())
        assert first is None
        assert ok is True
        assert session.location == LILLE
        assert session.location_error is None
        assert source.calls == 2

    def test_picked_location_used(self, gateway):
        denied = StaticGeolocationSource(error_reason=errors.LocationUnavailable.TIMEOUT)

        async def scenario():
            _, session = make_session(gateway, geolocation=denied)
            await session.start()
            ignored = session.pick_location(1.0, 1.0)
            session.open_form()
            session.start_picking_location()
            picked = session.pick_location(50.64, 3.07)
            view_after_pick = session.view
            report = await session.submit_report(suggestion())
            return session, ignored, picked, view_after_pick, report

        session, ignored, picked, view_after_pick, report = asyncio.run(scenario())
        assert ignored is False
        assert picked is True
        assert view_after_pick == ViewState.FORM_OPEN
        assert (report.location.lat, report.location.lng) == (50.64, 3.07)
        assert session.picked_location is None


class TestValidation:

    def test_validate_furniture_report(self, gateway, report_store):
        report_store.create(furniture_report())

        async def scenario():
            _, session = make_session(gateway)
            await session.start()
            ok = await session.validate_report("bench-ok")
            await session.drain()
            again = await session.validate_report("bench-ok")
            await session.drain()
            return session, ok, again

        session, ok, again = asyncio.run(scenario())
        assert ok is True
        assert again is False
        assert isinstance(session.last_error, errors.AlreadyValidated)
        assert session.notices[-1].message == "You have already validated this furniture report"
        assert session.points == 5
        stored = report_store.get("bench-ok")
        assert stored.validations == 1
        assert stored.validated_by == ["citizen-1"]
        assert session.find_report("bench-ok").validations == 1

    def test_store_rejects_duplicate_with_stale_view(self, gateway, report_store):
        report_store.create(furniture_report())

        async def scenario():
            _, session = make_session(gateway)
            await session.start()
            report_store.add_validation("bench-ok", "citizen-1")
            ok = await session.validate_report("bench-ok")
            await session.drain()
            return session, ok

        session, ok = asyncio.run(scenario())
        assert ok is False
        assert isinstance(session.last_error, errors.AlreadyValidated)
        assert session.points == 0
        assert report_store.get("bench-ok").validations == 1

    def test_problem_reports_cannot_be_validated(self, gateway, problem_draft):
        async def scenario():
            _, session = make_session(gateway)
            await session.start()
            report = await session.submit_report(problem_draft)
            await session.drain()
            return session, await session.validate_report(report.id)

        session, ok = asyncio.run(scenario())
        assert ok is False
        assert session.points == 20

    def test_two_users_validate(self, gateway, report_store):
        report_store.create(furniture_report())

        async def scenario():
            _, camille = make_session(gateway)
            _, noa = make_session(gateway, user=NOA)
            await camille.start()
            await noa.start()
            results = await asyncio.gather(
                camille.validate_report("bench-ok"),
                noa.validate_report("bench-ok"),
            )
            await camille.drain()
            await noa.drain()
            return camille, results

        camille, results = asyncio.run(scenario())
        assert results == [True, True]
        stored = report_store.get("bench-ok")
        assert stored.validations == 2
        assert sorted(stored.validated_by) == ["citizen-1", "citizen-2"]
        assert camille.find_report("bench-ok").validations == 2


class TestAgentMode:

    def test_citizen_cannot_change_status(self, gateway, report_store, monkeypatch):
        monkeypatch.setattr(settings, "AGENT_UIDS", ["citizen-1"])
        report_store.create(furniture_report())

        async def scenario():
            _, session = make_session(gateway)
            await session.start()
            return session, await session.change_status("bench-ok", ReportStatus.RESOLVED)

        session, ok = asyncio.run(scenario())
        assert ok is False
        assert report_store.get("bench-ok").status == ReportStatus.NEW

    def test_agent_mode_without_agent_role_refused(self, gateway, report_store, monkeypatch):
        monkeypatch.setattr(settings, "AGENT_UIDS", [])
        report_store.create(furniture_report())

        async def scenario():
            _, session = make_session(gateway)
            await session.start()
            session.toggle_user_mode()
            return session, await session.change_status("bench-ok", ReportStatus.RESOLVED)

        session, ok = asyncio.run(scenario())
        assert ok is False
        assert isinstance(session.last_error, errors.ValidationError)
        assert report_store.get("bench-ok").status == ReportStatus.NEW

    def test_agent_changes_status(self, gateway, report_store, monkeypatch):
        monkeypatch.setattr(settings, "AGENT_UIDS", ["citizen-1"])
        report_store.create(furniture_report())

        async def scenario():
            _, session = make_session(gateway)
            await session.start()
            mode = session.toggle_user_mode()
            ok = await session.change_status("bench-ok", ReportStatus.IN_PROGRESS)
            await session.drain()
            return session, mode, ok

        session, mode, ok = asyncio.run(scenario())
        assert mode == UserMode.AGENT
        assert ok is True
        assert session.find_report("bench-ok").status == ReportStatus.IN_PROGRESS
        assert session.notices[-1].message == 'Status changed to "In progress"'

    def test_unknown_report(self, gateway, monkeypatch):
        monkeypatch.setattr(settings, "AGENT_UIDS", ["citizen-1"])
        async def scenario():
            _, session = make_session(gateway)
            await session.start()
            session.toggle_user_mode()
            return session, await session.change_status("missing", ReportStatus.RESOLVED)

        session, ok = asyncio.run(scenario())
        assert ok is False
        assert isinstance(session.last_error, errors.ReportNotFound)


class TestViewState:

    def test_transitions(self, gateway, report_store):
        report_store.create(furniture_report())

        async def scenario():
            _, session = make_session(gateway)
            await session.start()
            await session.drain()
            session.open_report("bench-ok")
            selected = session.selected_report
            session.close_panel()
            session.open_profile()
            with pytest.raises(ValueError):
                session.open_form()
            session.close_panel()
            return session, selected

        session, selected = asyncio.run(scenario())
        assert selected.id == "bench-ok"
        assert session.view == ViewState.IDLE
        assert session.selected_report is None

    def test_open_unknown_report(self, gateway):
        async def scenario():
            _, session = make_session(gateway)
            await session.start()
            session.open_report("missing")
            return session

        session = asyncio.run(scenario())
        assert session.view == ViewState.IDLE
        assert session.notices[-1].level == "error"


class TestSubscriptionRetry:

    def test_retries_then_succeeds(self, gateway):
        real_subscribe = gateway.subscribe_reports
        attempts = []

        async def flaky(on_change):
            attempts.append(1)
            if len(attempts) < 3:
                raise errors.StoreReadError("not yet")
            return await real_subscribe(on_change)

        async def scenario():
            _, session = make_session(gateway)
            with patch.object(gateway, "subscribe_reports", new=flaky):
                await session.start()
                await session.drain()
            return session

        session = asyncio.run(scenario())
        assert len(attempts) == 3
        assert session.state == SessionState.READY
        assert session.reports == []

    def test_gives_up_without_failing_session(self, gateway, profile_store):
        failing = AsyncMock(side_effect=errors.StoreReadError("down"))

        async def scenario():
            _, session = make_session(gateway, max_retries=3)
            with patch.object(gateway, "subscribe_reports", new=failing):
                await session.start()
                await session.drain()
            return session

        session = asyncio.run(scenario())
        assert failing.await_count == 3
        assert session.state == SessionState.READY
        assert session.notices[-1].message == "Live updates are unavailable right now."
        assert session.profile is not None

    def test_explicit_zero_settings_are_kept(self, gateway):
        failing = AsyncMock(side_effect=errors.StoreReadError("down"))

        async def scenario():
            _, session = make_session(gateway, max_retries=0, location_timeout_ms=0)
            assert session.max_retries == 0
            assert session.location_timeout_ms == 0
            with patch.object(gateway, "subscribe_reports", new=failing):
                await session.start()
                await session.drain()
            return session

        session = asyncio.run(scenario())
        assert failing.await_count == 1
        assert session.state == SessionState.READY


class TestRank:

    def test_rank_follows_profile(self, gateway, profile_store, problem_draft):
        profile_store.ensure_profile("leader", ProfileDefaults(points=500))

        async def scenario():
            _, session = make_session(gateway)
            await session.start()
            await session.drain()
            before = session.rank
            await session.submit_report(problem_draft)
            await session.drain()
            return session, before

        session, before = asyncio.run(scenario())
        assert before == 1
        assert session.points == 20
        assert session.rank == 2
