"""Tests for storage/cleanup.py - LIFO release stack."""

import pytest

from efi_harness.storage.cleanup import CleanupStack


class TestUnwind:
    """Tests for unwinding order and error handling."""

    def test_releases_run_newest_first(self):
        order = []
        stack = CleanupStack("test")
        stack.push("first", order.append, "first")
        stack.push("second", order.append, "second")
        stack.push("third", order.append, "third")

        stack.unwind()

        assert order == ["third", "second", "first"]
        assert len(stack) == 0

    def test_failing_release_does_not_stop_others(self):
        order = []

        def broken():
            raise OSError("umount: target is busy")

        stack = CleanupStack("test")
        stack.push("rmdir", order.append, "rmdir")
        stack.push("unmount", broken)

        failures = stack.unwind()

        assert order == ["rmdir"]
        assert [name for name, _ in failures] == ["unmount"]
        assert stack.failures == failures

    def test_original_exception_is_preserved(self):
        """Test a cleanup failure never replaces the error being raised."""

        def broken():
            raise OSError("cleanup failed")

        with pytest.raises(ValueError, match="original"):
            with CleanupStack("test") as stack:
                stack.push("broken", broken)
                raise ValueError("original")

    def test_context_manager_unwinds_on_success(self):
        calls = []
        with CleanupStack("test") as stack:
            stack.push("release", calls.append, 1)
        assert calls == [1]

    def test_kwargs_passed_to_release(self):
        calls = []
        stack = CleanupStack()
        stack.push("release", lambda **kwargs: calls.append(kwargs), device="/dev/loop0")
        stack.unwind()
        assert calls == [{"device": "/dev/loop0"}]


class TestReleaseAndDiscard:
    """Tests for explicit release() and discard()."""

    def test_release_runs_once(self):
        calls = []
        with CleanupStack("test") as stack:
            stack.push("unbind", calls.append, "unbind")
            assert stack.release("unbind") is True
            assert stack.release("unbind") is False
        assert calls == ["unbind"]

    def test_release_error_propagates(self):
        def broken():
            raise OSError("detach failed")

        stack = CleanupStack("test")
        stack.push("unbind", broken)

        with pytest.raises(OSError, match="detach failed"):
            stack.release("unbind")

        assert stack.pending == ["unbind"]

    def test_failed_release_is_retried_on_unwind(self):
        attempts = []

        def busy_then_free():
            attempts.append("unmount")
            if len(attempts) == 1:
                raise OSError("umount: target is busy")

        stack = CleanupStack("test")
        stack.push("rmdir", attempts.append, "rmdir")
        stack.push("unmount", busy_then_free)

        with pytest.raises(OSError):
            stack.release("unmount")
        failures = stack.unwind()

        assert attempts == ["unmount", "unmount", "rmdir"]
        assert failures == []

    def test_release_picks_newest_with_name(self):
        calls = []
        stack = CleanupStack("test")
        stack.push("step", calls.append, "old")
        stack.push("step", calls.append, "new")

        stack.release("step")

        assert calls == ["new"]
        assert stack.pending == ["step"]

    def test_discard_drops_without_running(self):
        calls = []
        with CleanupStack("test") as stack:
            stack.push("remove-image", calls.append, "removed")
            assert stack.discard("remove-image") is True
            assert stack.discard("remove-image") is False
        assert calls == []

    def test_pending_lists_newest_first(self):
        stack = CleanupStack("test")
        stack.push("rmdir", print)
        stack.push("unmount", print)
        assert stack.pending == ["unmount", "rmdir"]
