from flask import jsonify
from flask_login import UserMixin
from .extensions import login_manager


class Identity(UserMixin):
    """Caller identity handed to us by the room service in front of this app."""

    def __init__(self, user_id, name=None):
        self.id = str(user_id)
        self.name = name or self.id

    def get_id(self):
        return self.id


def init_auth(app):
    login_manager.init_app(app)

    @login_manager.request_loader
    def load_from_request(req):
        user_id = (req.headers.get("X-User-Id") or "").strip()
        if not user_id:
            return None
        return Identity(user_id, (req.headers.get("X-User-Name") or "").strip() or None)

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "unauthorized", "message": "Authentication required"}), 401
