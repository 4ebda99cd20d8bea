# backend/tests/unit/test_flow_jobs.py

import pytest
from unittest.mock import AsyncMock

from leadflow.jobs import flow_jobs


@pytest.mark.asyncio
async def test_tick_reports_counts(mocker):
    handle = mocker.patch.object(flow_jobs.flow_engine, "handle_event", new_callable=AsyncMock,
                                 return_value={"status": "processed", "resumed": 2, "fired": 0})

    assert (await flow_jobs.resume_due_executions())["resumed"] == 2
    assert handle.await_args.args[0].event_type == "schedule_tick"


@pytest.mark.asyncio
async def test_failed_tick_does_not_stop_the_scheduler(mocker):
    mocker.patch.object(flow_jobs.flow_engine, "handle_event", new_callable=AsyncMock,
                        side_effect=ConnectionError("mongo down"))

    assert await flow_jobs.resume_due_executions() == {}
