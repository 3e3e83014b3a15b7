"""
Unit tests for scheduler (dbagent/scheduler.py).

Tests APScheduler configuration and job scheduling.
"""

import logging
import signal
from unittest.mock import MagicMock, patch

import pytest
from apscheduler.triggers.cron import CronTrigger

from dbagent import scheduler as scheduler_module
from dbagent.scheduler import JOB_ID, build_scheduler, parse_cron, run_scheduled


class TestParseCron:
    """Test crontab parsing."""

    def test_valid(self):
        trigger = parse_cron(' 0 3 * * * ')

        assert isinstance(trigger, CronTrigger)
        assert str(trigger.timezone) == 'UTC'

    @pytest.mark.parametrize('cron', ['not a cron', '61 3 * * *', '0 3 * *'])
    def test_invalid(self, cron):
        with pytest.raises(ValueError):
            parse_cron(cron)


class TestBuildScheduler:
    """Test scheduler construction."""

    @patch('dbagent.scheduler.BlockingScheduler')
    def test_configuration(self, mock_scheduler_class):
        """Test one worker, coalescing and a single job instance."""
        mock_scheduler = MagicMock()
        mock_scheduler_class.return_value = mock_scheduler
        job = MagicMock()

        result = build_scheduler(job, '0 3 * * *', name='postgres backup')

        assert result is mock_scheduler
        call_kwargs = mock_scheduler_class.call_args[1]
        assert call_kwargs['timezone'] == 'UTC'
        assert call_kwargs['job_defaults'] == {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 300
        }
        assert call_kwargs['executors']['default']._pool._max_workers == 1

        add_kwargs = mock_scheduler.add_job.call_args[1]
        assert add_kwargs['id'] == JOB_ID
        assert add_kwargs['args'] == [job, 'postgres backup']
        assert add_kwargs['name'] == 'Scheduled postgres backup'
        assert add_kwargs['replace_existing'] is True
        assert isinstance(add_kwargs['trigger'], CronTrigger)

    def test_real_scheduler_has_job(self):
        scheduler = build_scheduler(MagicMock(), '*/15 * * * *')

        jobs = scheduler.get_jobs()
        assert [j.id for j in jobs] == [JOB_ID]

    def test_invalid_cron(self):
        with pytest.raises(ValueError):
            build_scheduler(MagicMock(), 'every day')


class TestRunJob:
    """Test the job wrapper."""

    def test_success(self, caplog):
        job = MagicMock(return_value='<RunSummary ok>')

        with caplog.at_level(logging.INFO, logger='dbagent.scheduler'):
            scheduler_module._run_job(job, 'backup')

        job.assert_called_once_with()
        assert 'Scheduled backup finished: ' in caplog.text

    def test_failure_is_logged(self, caplog):
        """Test an exception does not escape into the scheduler."""
        job = MagicMock(side_effect=RuntimeError('pg_dump missing'))

        with caplog.at_level(logging.ERROR, logger='dbagent.scheduler'):
            scheduler_module._run_job(job, 'backup')

        assert 'Scheduled backup failed: pg_dump missing' in caplog.text


class TestRunScheduled:
    """Test run_scheduled."""

    @patch('dbagent.scheduler.signal.signal')
    @patch('dbagent.scheduler.build_scheduler')
    def test_starts_and_handles_signals(self, mock_build, mock_signal):
        mock_scheduler = MagicMock()
        mock_build.return_value = mock_scheduler
        job = MagicMock()

        run_scheduled(job, '0 3 * * *', name='mongo backup')

        mock_build.assert_called_once_with(job, '0 3 * * *', timezone='UTC', name='mongo backup')
        mock_scheduler.start.assert_called_once()

        registered = {c[0][0]: c[0][1] for c in mock_signal.call_args_list}
        assert set(registered) == {signal.SIGTERM, signal.SIGINT}

        registered[signal.SIGTERM](signal.SIGTERM, None)
        mock_scheduler.shutdown.assert_called_once_with(wait=True)
