"""Tests for batchload.lib.controller module.

Covers the run lifecycle end to end against in-memory DuckDB backends:
- iteration counts and stop reasons
- watermark monotonicity and no duplicate rows
- recovery by re-running after failures at each step
"""

import math
from datetime import datetime

import pandas as pd
import pytest

from batchload.lib.controller import (
    IncrementalLoad,
    LoadState,
    StopReason,
    load_step,
)
from batchload.lib.errors import (
    BatchFetchError,
    IncrementalLoadError,
    SinkWriteError,
    WatermarkError,
)
from batchload.lib.sink import WriteMode
from batchload.lib.watermark import FLOOR_WATERMARK, table_exists
from tests.load_helpers import FailingSink, make_orders, target_frame


def assert_exact_copy(source: pd.DataFrame, sink_con) -> None:
    """Target holds every source row exactly once."""
    target = target_frame(sink_con)
    assert len(target) == len(source)
    assert target["order_id"].is_unique
    assert list(target["order_id"]) == list(source["order_id"])


class TestSingleRun:
    """A run against a fresh target."""

    def test_scaled_scenario(self, source_con, sink_con, load_orders, make_config):
        """2,500 rows in batches of 1,000: three iterations, then exhausted."""
        source = load_orders(2500)

        result = IncrementalLoad(make_config(), source_con, sink_con).run()

        assert result.stop_reason is StopReason.EXHAUSTED
        assert result.iterations == 3
        assert result.rows_loaded == 2500
        assert [b.rows for b in result.batches] == [1000, 1000, 500]
        assert pd.Timestamp(result.final_watermark) == source["updated_at"].max()
        assert result.initial_watermark == FLOOR_WATERMARK
        assert result.success
        assert_exact_copy(source, sink_con)

    @pytest.mark.parametrize(
        "pending,batch_size",
        [(0, 1000), (1, 1000), (999, 1000), (1000, 1000), (1001, 1000), (3000, 1000), (7, 3)],
    )
    def test_iterations_are_ceil_of_pending_over_batch(
        self, source_con, sink_con, load_orders, make_config, pending, batch_size
    ):
        load_orders(pending)

        result = IncrementalLoad(
            make_config(batch_size=batch_size), source_con, sink_con
        ).run()

        assert result.stop_reason is StopReason.EXHAUSTED
        assert result.iterations == math.ceil(pending / batch_size)
        assert result.rows_loaded == pending

    def test_empty_source_empty_target(self, source_con, sink_con, load_orders, make_config):
        """Nothing to load: zero iterations, floor watermark, no target created."""
        load_orders(0)

        result = IncrementalLoad(make_config(), source_con, sink_con).run()

        assert result.stop_reason is StopReason.EXHAUSTED
        assert result.iterations == 0
        assert result.rows_loaded == 0
        assert result.final_watermark == datetime(1900, 1, 1)
        assert not table_exists(sink_con, "orders_copy")

    def test_watermark_strictly_increases(self, source_con, sink_con, load_orders, make_config):
        load_orders(2500)

        result = IncrementalLoad(make_config(), source_con, sink_con).run()

        for batch in result.batches:
            assert pd.Timestamp(batch.watermark_after) > pd.Timestamp(batch.watermark_before)
        for earlier, later in zip(result.batches, result.batches[1:]):
            assert later.watermark_before == earlier.watermark_after

    def test_unsorted_source(self, source_con, sink_con, make_config):
        source = make_orders(2500)
        source_con.create_table("orders", source.sample(frac=1, random_state=3))

        result = IncrementalLoad(make_config(), source_con, sink_con).run()

        assert result.rows_loaded == 2500
        assert_exact_copy(source, sink_con)

    def test_all_writes_append_without_recreate(
        self, source_con, sink_con, load_orders, make_config
    ):
        load_orders(2500)

        result = IncrementalLoad(make_config(), source_con, sink_con).run()

        assert [b.mode for b in result.batches] == [WriteMode.APPEND] * 3

    def test_timing_recorded(self, source_con, sink_con, load_orders, make_config):
        load_orders(1500)

        result = IncrementalLoad(make_config(), source_con, sink_con).run()

        assert set(result.timing["phases"]) == {"resolve", "fetch", "write", "advance"}
        assert result.timing["counters"] == {"rows_loaded": 1500, "iterations": 2}

    def test_query_source(self, source_con, sink_con, load_orders, make_config):
        load_orders(100)
        config = make_config(
            source_table=None,
            query="SELECT * FROM orders WHERE amount >= 50",
            batch_size=20,
        )

        result = IncrementalLoad(config, source_con, sink_con).run()

        assert result.rows_loaded == 50
        assert result.iterations == 3


class TestRerun:
    """Repeated runs resume from the target."""

    def test_second_run_loads_nothing(self, source_con, sink_con, load_orders, make_config):
        source = load_orders(2500)
        first = IncrementalLoad(make_config(), source_con, sink_con).run()

        second = IncrementalLoad(make_config(), source_con, sink_con).run()

        assert second.stop_reason is StopReason.EXHAUSTED
        assert second.iterations == 0
        assert second.rows_loaded == 0
        assert second.final_watermark == first.final_watermark
        assert_exact_copy(source, sink_con)

    def test_new_source_rows_picked_up(self, source_con, sink_con, load_orders, make_config):
        load_orders(2500)
        IncrementalLoad(make_config(), source_con, sink_con).run()
        source = load_orders(3200)

        result = IncrementalLoad(make_config(), source_con, sink_con).run()

        assert result.rows_loaded == 700
        assert result.iterations == 1
        assert_exact_copy(source, sink_con)

    def test_append_resumes_from_existing_target(
        self, source_con, sink_con, load_orders, make_config
    ):
        source = load_orders(2500)
        sink_con.create_table("orders_copy", source.iloc[:1200])

        result = IncrementalLoad(make_config(), source_con, sink_con).run()

        assert pd.Timestamp(result.initial_watermark) == source["updated_at"].iloc[1199]
        assert result.rows_loaded == 1300
        assert result.iterations == 2
        assert_exact_copy(source, sink_con)


class TestCap:
    """Runs that stop at max_iterations."""

    @pytest.mark.parametrize(
        "max_iterations,reason,rows",
        [
            (1, StopReason.CAPPED, 1000),
            (2, StopReason.CAPPED, 2000),
            (3, StopReason.EXHAUSTED, 2500),
            (10, StopReason.EXHAUSTED, 2500),
        ],
    )
    def test_cap(self, source_con, sink_con, load_orders, make_config, max_iterations, reason, rows):
        load_orders(2500)

        result = IncrementalLoad(
            make_config(max_iterations=max_iterations), source_con, sink_con
        ).run()

        assert result.stop_reason is reason
        assert result.rows_loaded == rows
        assert result.iterations <= max_iterations

    def test_pending_equal_to_run_capacity_caps(
        self, source_con, sink_con, load_orders, make_config
    ):
        """The cap is checked before the empty fetch that would confirm exhaustion."""
        load_orders(2000)

        first = IncrementalLoad(make_config(max_iterations=2), source_con, sink_con).run()
        second = IncrementalLoad(make_config(max_iterations=2), source_con, sink_con).run()

        assert first.stop_reason is StopReason.CAPPED
        assert first.rows_loaded == 2000
        assert second.stop_reason is StopReason.EXHAUSTED
        assert second.iterations == 0

    def test_capped_run_resumes(self, source_con, sink_con, load_orders, make_config):
        source = load_orders(2500)
        config = make_config(max_iterations=1)

        results = []
        while not results or results[-1].stop_reason is StopReason.CAPPED:
            results.append(IncrementalLoad(config, source_con, sink_con).run())

        assert [r.rows_loaded for r in results] == [1000, 1000, 500]
        assert results[-1].stop_reason is StopReason.EXHAUSTED
        assert_exact_copy(source, sink_con)

    def test_capped_result_flags_more_data(self, source_con, sink_con, load_orders, make_config):
        load_orders(2500)

        result = IncrementalLoad(make_config(max_iterations=1), source_con, sink_con).run()

        assert result.more_data_may_remain
        assert result.success
        assert result.raise_for_failure() is result


class TestRecreateTarget:
    """recreate_target rebuilds the target from the floor value."""

    def test_first_write_initializes(self, source_con, sink_con, load_orders, make_config):
        source = load_orders(2500)
        stale = make_orders(10, start=datetime(2030, 1, 1), first_id=9001)
        sink_con.create_table("orders_copy", stale)

        result = IncrementalLoad(make_config(recreate_target=True), source_con, sink_con).run()

        assert [b.mode for b in result.batches] == [
            WriteMode.INITIALIZE,
            WriteMode.APPEND,
            WriteMode.APPEND,
        ]
        assert result.initial_watermark == FLOOR_WATERMARK
        assert result.rows_loaded == 2500
        assert_exact_copy(source, sink_con)

    def test_without_recreate_existing_rows_define_resume_point(
        self, source_con, sink_con, load_orders, make_config
    ):
        load_orders(2500)
        stale = make_orders(10, start=datetime(2030, 1, 1), first_id=9001)
        sink_con.create_table("orders_copy", stale)

        result = IncrementalLoad(make_config(), source_con, sink_con).run()

        assert result.rows_loaded == 0
        assert len(target_frame(sink_con)) == 10

    def test_recreate_with_empty_source_keeps_target(
        self, source_con, sink_con, load_orders, make_config
    ):
        """No batch means no INITIALIZE write."""
        load_orders(0)
        sink_con.create_table("orders_copy", make_orders(10))

        result = IncrementalLoad(make_config(recreate_target=True), source_con, sink_con).run()

        assert result.iterations == 0
        assert len(target_frame(sink_con)) == 10


class TestFailures:
    """Failures end the run with stop_reason=failed and nothing rolled back."""

    def test_write_failure(self, source_con, sink_con, load_orders, make_config):
        load_orders(2500)
        sink = FailingSink(sink_con, "insert", on_call=1)

        result = IncrementalLoad(make_config(), source_con, sink).run()

        assert sink.tripped
        assert result.stop_reason is StopReason.FAILED
        assert not result.success
        assert result.iterations == 1
        assert result.rows_loaded == 1000
        assert isinstance(result.error, IncrementalLoadError)
        assert isinstance(result.error.cause, SinkWriteError)
        assert len(target_frame(sink_con)) == 1000

    def test_failed_result_carries_last_watermark(
        self, source_con, sink_con, load_orders, make_config
    ):
        source = load_orders(2500)
        sink = FailingSink(sink_con, "insert", on_call=1)

        result = IncrementalLoad(make_config(), source_con, sink).run()

        expected = source["updated_at"].iloc[999]
        assert pd.Timestamp(result.final_watermark) == expected
        assert result.error.last_watermark == expected.isoformat()
        assert result.error.iterations == 1
        assert result.error.rows_loaded == 1000

    def test_raise_for_failure(self, source_con, sink_con, load_orders, make_config):
        load_orders(2500)
        sink = FailingSink(sink_con, "insert", on_call=1)
        result = IncrementalLoad(make_config(), source_con, sink).run()

        with pytest.raises(IncrementalLoadError, match="re-run"):
            result.raise_for_failure()

    def test_rerun_after_write_failure(self, source_con, sink_con, load_orders, make_config):
        source = load_orders(2500)
        IncrementalLoad(make_config(), source_con, FailingSink(sink_con, "insert")).run()

        result = IncrementalLoad(make_config(), source_con, sink_con).run()

        assert result.stop_reason is StopReason.EXHAUSTED
        assert result.rows_loaded == 1500
        assert_exact_copy(source, sink_con)

    def test_rerun_after_failure_between_write_and_advance(
        self, source_con, sink_con, load_orders, make_config
    ):
        """The written batch is durable; the re-run skips it, no duplicates."""
        source = load_orders(2500)
        sink = FailingSink(sink_con, "table", on_call=2)

        failed = IncrementalLoad(make_config(), source_con, sink).run()

        assert failed.stop_reason is StopReason.FAILED
        assert isinstance(failed.error.cause, WatermarkError)
        assert failed.iterations == 1
        assert len(target_frame(sink_con)) == 2000

        result = IncrementalLoad(make_config(), source_con, sink_con).run()

        assert pd.Timestamp(result.initial_watermark) == source["updated_at"].iloc[1999]
        assert result.rows_loaded == 500
        assert_exact_copy(source, sink_con)

    def test_fetch_failure(self, source_con, sink_con, load_orders, make_config):
        source = load_orders(2500)
        failing_source = FailingSink(source_con, "table", on_call=2)

        result = IncrementalLoad(make_config(), failing_source, sink_con).run()

        assert result.stop_reason is StopReason.FAILED
        assert isinstance(result.error.cause, BatchFetchError)
        assert result.iterations == 1

        IncrementalLoad(make_config(), source_con, sink_con).run()
        assert_exact_copy(source, sink_con)

    def test_resolve_failure(self, source_con, sink_con, load_orders, make_config):
        load_orders(10)
        sink = FailingSink(sink_con, "list_tables", on_call=1)

        load = IncrementalLoad(make_config(), source_con, sink)
        result = load.run()

        assert load.state is LoadState.FAILED
        assert result.stop_reason is StopReason.FAILED
        assert result.iterations == 0
        assert result.final_watermark is None
        assert not table_exists(sink_con, "orders_copy")

    def test_target_reset_mid_run(self, source_con, sink_con, load_orders, make_config):
        """A target reset between write and advance is reported, not absorbed."""
        load_orders(2500)

        class ResettingSink(FailingSink):
            def __getattr__(self, name):
                if name != "insert":
                    return super().__getattr__(name)

                def insert(table, obj, **kwargs):
                    self._con.insert(table, obj, **kwargs)
                    self._con.create_table(
                        table, make_orders(3, start=datetime(2000, 1, 1)), overwrite=True
                    )

                return insert

        result = IncrementalLoad(
            make_config(), source_con, ResettingSink(sink_con, "none")
        ).run()

        assert result.stop_reason is StopReason.FAILED
        assert isinstance(result.error.cause, WatermarkError)
        assert "moved backwards" in str(result.error.cause)


class TestLifecycle:
    """State transitions, iter_batches and logging."""

    def test_states(self, source_con, sink_con, load_orders, make_config):
        load_orders(2500)
        load = IncrementalLoad(make_config(), source_con, sink_con)
        assert load.state is LoadState.INIT

        batches = load.iter_batches()
        first = next(batches)

        assert first.iteration == 1
        assert load.state is LoadState.ITERATING
        assert load.result is None

        rest = list(batches)

        assert [b.iteration for b in rest] == [2, 3]
        assert load.state is LoadState.DONE
        assert load.result.iterations == 3

    def test_capped_state(self, source_con, sink_con, load_orders, make_config):
        load_orders(2500)
        load = IncrementalLoad(make_config(max_iterations=1), source_con, sink_con)

        load.run()

        assert load.state is LoadState.CAPPED

    def test_instance_runs_once(self, source_con, sink_con, load_orders, make_config):
        load_orders(10)
        load = IncrementalLoad(make_config(), source_con, sink_con)
        load.run()

        with pytest.raises(RuntimeError, match="run once"):
            load.run()

    def test_lifecycle_events_logged(self, source_con, sink_con, load_orders, make_config, caplog):
        caplog.set_level("INFO")
        load_orders(2500)

        IncrementalLoad(make_config(), source_con, sink_con).run()

        events = [r.getMessage() for r in caplog.records if r.name == "batchload.lib.controller"]
        assert events == ["load_started", "batch_loaded", "batch_loaded", "batch_loaded", "load_completed"]

    def test_batch_event_fields(self, source_con, sink_con, load_orders, make_config, caplog):
        caplog.set_level("INFO")
        load_orders(10)

        IncrementalLoad(make_config(), source_con, sink_con).run()

        record = next(r for r in caplog.records if r.getMessage() == "batch_loaded")
        assert record.load == "orders_to_orders_copy"
        assert record.rows == 10
        assert record.mode == "append"

    def test_capped_event_is_warning(self, source_con, sink_con, load_orders, make_config, caplog):
        caplog.set_level("INFO")
        load_orders(2500)

        IncrementalLoad(make_config(max_iterations=1), source_con, sink_con).run()

        record = next(r for r in caplog.records if r.getMessage() == "load_capped")
        assert record.levelname == "WARNING"

    def test_failed_event_is_error(self, source_con, sink_con, load_orders, make_config, caplog):
        caplog.set_level("INFO")
        load_orders(2500)

        IncrementalLoad(make_config(), source_con, FailingSink(sink_con, "insert")).run()

        record = next(r for r in caplog.records if r.getMessage() == "load_failed")
        assert record.levelname == "ERROR"
        assert record.error_type == "SinkWriteError"

    def test_result_to_dict(self, source_con, sink_con, load_orders, make_config):
        load_orders(1500)

        data = IncrementalLoad(make_config(), source_con, sink_con).run().to_dict()

        assert data["stop_reason"] == "exhausted"
        assert data["rows_loaded"] == 1500
        assert data["iterations"] == 2
        assert data["initial_watermark"] == "1900-01-01T00:00:00"
        assert data["error"] is None
        assert [b["mode"] for b in data["batches"]] == ["append", "append"]


class TestLoadStep:
    """Tests for a single Fetch -> Write -> Advance step."""

    def test_step_threads_watermark(self, source_con, sink_con, load_orders, make_config):
        source = load_orders(1500)
        config = make_config()

        first = load_step(config, source_con, sink_con, FLOOR_WATERMARK, 0)
        second = load_step(config, source_con, sink_con, first.watermark, 1)

        assert first.outcome.rows == 1000
        assert second.outcome.rows == 500
        assert second.batch.is_final
        assert pd.Timestamp(second.watermark) == source["updated_at"].max()

    def test_empty_step(self, source_con, sink_con, load_orders, make_config):
        load_orders(0)

        step = load_step(make_config(), source_con, sink_con, FLOOR_WATERMARK, 0)

        assert step.outcome is None
        assert step.watermark == FLOOR_WATERMARK



class TestLimitations:
    """Known edge cases of the strict greater-than resume filter."""

    def test_boundary_tie_skips_remainder(self, source_con, sink_con, make_config):
        frame = make_orders(3)
        frame["updated_at"] = frame["updated_at"].iloc[0]
        source_con.create_table("orders", frame, overwrite=True)

        result = IncrementalLoad(make_config(batch_size=2), source_con, sink_con).run()

        # The third row shares the resume value, so the next fetch never sees it.
        assert result.stop_reason is StopReason.EXHAUSTED
        assert result.rows_loaded == 2
        assert result.iterations == 1
        assert len(target_frame(sink_con)) == 2

@pytest.mark.slow
class TestFullVolume:
    """The full-size scenario: 2,500,000 rows in batches of 1,000,000."""

    def test_two_and_a_half_million_rows(self, source_con, sink_con, load_orders, make_config):
        source = load_orders(2_500_000)
        config = make_config(batch_size=1_000_000, max_iterations=50)

        result = IncrementalLoad(config, source_con, sink_con).run()

        assert result.stop_reason is StopReason.EXHAUSTED
        assert result.iterations == 3
        assert result.rows_loaded == 2_500_000
        assert pd.Timestamp(result.final_watermark) == source["updated_at"].max()
        assert sink_con.table("orders_copy").count().execute() == 2_500_000

        rerun = IncrementalLoad(config, source_con, sink_con).run()
        assert rerun.rows_loaded == 0
