import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "x" * 40

import pytest
from werkzeug.security import generate_password_hash


@pytest.fixture
def app_module():
    import app as module

    module.app.config["TESTING"] = True
    with module.app.app_context():
        module.db.drop_all()
        module.db.create_all()
        yield module
        module.db.session.rollback()
        module.db.session.remove()
        module.db.drop_all()


@pytest.fixture
def client(app_module):
    return app_module.app.test_client()


@pytest.fixture
def make_user(app_module):
    from models import User, next_user_seq

    password_hash = generate_password_hash("password123")

    def _make_user(name, *, role="teacher", subject=None, seq=None, class_assigned=None, email=None):
        user = User(
            seq=seq if seq is not None else next_user_seq(),
            name=name,
            email=email or f"{name.lower().replace(' ', '.')}@example.org",
            password_hash=password_hash,
            role=role,
            subject=subject,
            class_assigned=class_assigned,
        )
        app_module.db.session.add(user)
        app_module.db.session.commit()
        return user

    return _make_user


@pytest.fixture
def login(client):
    def _login(user_id, role):
        with client.session_transaction() as sess:
            sess["role"] = role
            sess["user_id"] = user_id

    return _login
