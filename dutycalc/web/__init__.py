from typing import Any, Dict, Optional

from flask import Flask

from dutycalc.config import Config
from dutycalc.web.db import db


def create_app(config_overrides: Optional[Dict[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    db.init_app(app)

    # Models must be imported before create_all()
    from dutycalc.web.db import models  # noqa: F401
    from dutycalc.web.cli import register_commands

    register_commands(app)

    return app
