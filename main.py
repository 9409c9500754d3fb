import json
import sys

from config import load_config, validate_config
from utils.logger import setup_logging, log_info, log_error, log_warning
from menus.auth_menu import auth_menu


def main() -> int:
    setup_logging()

    try:
        config = load_config()
    except json.JSONDecodeError as e:
        log_error(f"Config file contains invalid JSON: {e}")
        return 1
    except Exception as e:
        log_error(f"Error loading config: {e}")
        return 1

    setup_logging(config.get("log_level", "INFO"), config.get("log_file") or None)

    is_valid, errors = validate_config(config)
    if not is_valid:
        for error in errors:
            log_warning(error)
        log_error("Fix config.json and try again.")
        return 1

    auth_menu(config)
    log_info("Exiting program...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
