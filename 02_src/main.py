"""Main entry point for chatsync."""

from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from chatsync.api import create_fastapi_app
from chatsync.api.routes import control
from chatsync.app import Application
from chatsync.config import Settings
from chatsync.logging_config import setup_logging
from sim import Sim


def main():
    """Run the application."""
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")

    # Get configuration from environment
    settings = Settings.from_env()
    setup_logging(settings.log_level)

    # Create SIM instance and hand it to the control router
    sim = Sim(api_url=settings.api_url)
    control.set_sim_instance(sim)

    app = create_fastapi_app(Application(settings=settings))

    # Run with uvicorn; our dictConfig stays in place
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
