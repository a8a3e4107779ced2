"""Management script: ``python manage.py init-db``, ``python manage.py usage rollover``, ..."""

from flask.cli import FlaskGroup

from billing_engine import create_app

cli = FlaskGroup(create_app=create_app)


if __name__ == "__main__":
    cli()
