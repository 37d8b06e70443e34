"""
Main entry point for the fleet maintenance application.

Configures logging and launches the command-line interface defined with Typer.
The cli module loads configuration and opens the store when a command runs.
"""
import logging

# --- Logging Setup ---
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)
logger.debug("CLI __main__ script started.")

from .cli import app

def run():
    """Runs the Typer CLI application."""
    app()

if __name__ == "__main__":
    run()
