"""
Test suite for the job runner

Tests the one-shot --as-of run and one pass of the --loop schedule.
"""

import json
import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import patch

import run
from retail_ledger.interest import PHASES
from retail_ledger.service import BankingService


class TestJobRunner:
    """Test run.main"""

    def test_run_once_as_of(self, capsys):
        code = run.main(["--as-of", "2024-02-01T00:00:00", "--database-url", "memory://"])

        assert code == 0
        results = json.loads(capsys.readouterr().out)
        assert set(results) == set(PHASES)
        assert all(counts == {"processed": 0, "skipped": 0, "failed": 0}
                   for counts in results.values())

    def test_loop_runs_at_scheduled_time(self):
        due = datetime.now(timezone.utc) - timedelta(seconds=1)
        with patch.object(BankingService, "next_interest_job_run", return_value=due), \
                patch.object(BankingService, "run_monthly_interest_job",
                             side_effect=KeyboardInterrupt) as job, \
                patch.object(run.time, "sleep") as sleep:
            code = run.main(["--loop", "--database-url", "memory://"])

        assert code == 0
        job.assert_called_once_with(due)
        sleep.assert_not_called()

    def test_bad_as_of_timestamp(self):
        with pytest.raises(ValueError):
            run.main(["--as-of", "not-a-date", "--database-url", "memory://"])

    def test_naive_as_of_treated_as_utc(self):
        with patch.object(BankingService, "run_monthly_interest_job", return_value={}) as job:
            code = run.main(["--as-of", "2024-03-01T00:00:00", "--database-url", "memory://"])

        assert code == 0
        job.assert_called_once_with(datetime(2024, 3, 1, tzinfo=timezone.utc))
