"""ASGI entrypoint for the intake funnel API."""

from intake_funnel.api.app import create_app
from intake_funnel.containers import build_container

app = create_app(build_container())
