"""Import sanity tests.

These lightweight tests verify that the WSGI entrypoint and the gunicorn
hook resolve, the minimum bar for a deploy.
"""

from unittest.mock import patch


def test_wsgi_app_object():
    """Gunicorn's 'app:app' entrypoint must resolve to a Flask instance."""
    from app import app as flask_app
    assert hasattr(flask_app, "route"), "app object is not a Flask instance"


def test_core_symbols_import():
    from decode_flow import execute_decode_flow
    from decoder import get_or_create_decoder_report
    from augment import augment_property
    assert execute_decode_flow and get_or_create_decoder_report and augment_property


@patch("worker.start_worker")
def test_post_fork_starts_worker(mock_start):
    import gunicorn_config
    gunicorn_config.post_fork(server=None, worker=None)
    mock_start.assert_called_once()


@patch("worker.start_worker", side_effect=RuntimeError("db locked"))
def test_post_fork_survives_worker_failure(_mock_start):
    import gunicorn_config
    gunicorn_config.post_fork(server=None, worker=None)
