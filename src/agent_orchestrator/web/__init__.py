"""HTTP API for starting, stopping, and observing runs."""

from __future__ import annotations


def create_app(orchestrator_factory=None) -> object:
	"""Create the Starlette ASGI application."""
	from .app import build_app

	return build_app(orchestrator_factory=orchestrator_factory)


def run_web_server(host: str = "127.0.0.1", port: int = 8420) -> None:
	"""Run the HTTP API server."""
	try:
		import uvicorn
	except ImportError:
		raise SystemExit(
			"Web extras not installed. Install with: pip install -e '.[web]'"
		)

	app = create_app()

	print(f"API running at http://{host}:{port}")
	print("Press Ctrl+C to stop.")
	uvicorn.run(app, host=host, port=port, log_level="warning")
