import io
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import pytest
from werkzeug.datastructures import FileStorage

from recorder import create_app
from recorder.auth import Identity
from recorder.extensions import db


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'test.db'}",
        'RQ_ENABLED': False,
        'RETENTION_SWEEP_ENABLED': False,
        'STORAGE_BACKEND': 'local',
        'LOCAL_STORAGE_DIR': str(tmp_path / 'blobs'),
        'RECORDING_SCRATCH_DIR': str(tmp_path / 'scratch'),
        'CHUNK_UPLOAD_DIR': str(tmp_path / 'chunks'),
    })
    yield app


@pytest.fixture
def app_ctx(app):
    # request tests must not share this context: flask-login caches the user on g
    with app.app_context():
        yield app
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def controller(app_ctx):
    from recorder.services.lifecycle import get_controller
    return get_controller()


@pytest.fixture
def alice():
    return Identity('alice', 'Alice')


@pytest.fixture
def bob():
    return Identity('bob', 'Bob')


def headers(user_id, name=None):
    return {'X-User-Id': user_id, 'X-User-Name': name or user_id}


def video(data=b'\x1aE\xdf\xa3webm-bytes', filename='take.webm'):
    return FileStorage(stream=io.BytesIO(data), filename=filename, content_type='video/webm')
