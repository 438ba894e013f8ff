import concurrent.futures
import logging

from relay.providers.neonize_socket import _log_handler_failure


def test_handler_failure_is_logged(caplog):
    future: concurrent.futures.Future[None] = concurrent.futures.Future()
    future.set_exception(RuntimeError("status store locked"))

    with caplog.at_level(logging.ERROR, logger="relay.providers.neonize_socket"):
        _log_handler_failure(future)

    assert "WhatsApp update handler failed" in caplog.text
    assert "status store locked" in caplog.text


def test_successful_or_cancelled_handler_is_quiet(caplog):
    done: concurrent.futures.Future[None] = concurrent.futures.Future()
    done.set_result(None)
    cancelled: concurrent.futures.Future[None] = concurrent.futures.Future()
    cancelled.cancel()

    with caplog.at_level(logging.ERROR, logger="relay.providers.neonize_socket"):
        _log_handler_failure(done)
        _log_handler_failure(cancelled)

    assert caplog.records == []
