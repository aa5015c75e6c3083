"""Main entry point for Compose Guardian."""

import asyncio

from compose_guardian.agent import GuardianAgent
from compose_guardian.config import get_settings
from compose_guardian.logging import get_logger, setup_logging


async def main() -> None:
    """Main application entry point."""
    setup_logging()
    log = get_logger("compose_guardian.main")

    settings = get_settings()
    log.info(
        "starting_compose_guardian",
        environment=settings.environment,
        compose_dir=settings.compose_folder_path,
        state_dir=settings.state_dir,
    )

    agent = GuardianAgent.from_settings(settings)
    try:
        await agent.start()
    except KeyboardInterrupt:
        log.info("shutdown_requested")
    finally:
        agent.cleanup()
        log.info("compose_guardian_stopped")


def run() -> None:
    """Run the application."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
