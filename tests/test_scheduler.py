"""
Time-triggered allocation runs.
"""
import pytest

from rebalancer import scheduler as allocation_scheduler


@pytest.fixture
def scheduled_session(monkeypatch, session_factory):
    monkeypatch.setattr(allocation_scheduler, "SessionLocal", session_factory)


class TestScheduler:

    def test_job_registered_from_cron_setting(self):
        allocation_scheduler.setup_scheduler()
        jobs = allocation_scheduler.get_scheduled_jobs()

        assert [j["id"] for j in jobs] == ["allocation_run"]
        assert "cron" in jobs[0]["trigger"]
        allocation_scheduler.scheduler.remove_all_jobs()

    def test_run_allocation_success(self, scheduled_session, simple_push):
        result = allocation_scheduler.run_allocation("acme")
        assert result["success"] is True
        assert result["total_suggestions"] == 1

    def test_run_allocation_without_candidates(self, scheduled_session, seed):
        seed.store("lonely")
        result = allocation_scheduler.run_allocation("acme")
        assert result == {"success": False, "error": "NoEligibleCandidates", "run_id": result["run_id"]}
        assert result["run_id"] is not None
