"""Main entry point for the animestream player."""

import argparse
import sys
import traceback
import logging
import tkinter as tk
from tkinter import messagebox

from .ui import PlayerWindow
from .utils import Config, log_error
from .version import __version__

# Setup logging to console
logging.basicConfig(
    level=logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="animestream", description="Watch an anime episode.")
    parser.add_argument("anime_id", help="AniList id of the anime")
    parser.add_argument("episode_id", help="Episode id as returned by the provider")
    parser.add_argument("--debug", action="store_true", help="Log playback engine diagnostics")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)
    try:
        logger.info(f"Starting animestream v{__version__}")
        config = Config()
        logger.info(f"Opening anime {args.anime_id}, episode {args.episode_id}")
        app = PlayerWindow(args.anime_id, args.episode_id, config, debug=args.debug)
        logger.info("Player initialized, starting main loop...")
        app.mainloop()
        logger.info("Application closed normally")
    except KeyboardInterrupt:
        logger.info("Application interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error in main(): {e}", exc_info=True)
        log_error("Fatal error in main()", e)
        # Try to show error dialog if Tkinter is partially working
        try:
            root = tk.Tk()
            root.withdraw()  # Hide main window
            error_msg = f"Player failed to start.\n\nError: {e}\n\n{traceback.format_exc()}"
            messagebox.showerror("animestream Error", error_msg)
        except Exception as dialog_error:
            logger.warning(f"Could not show error dialog: {dialog_error}")
        raise


if __name__ == "__main__":
    main()
