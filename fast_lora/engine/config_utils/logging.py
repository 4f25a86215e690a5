import logging
import logging.config
import pathlib

logger = logging.getLogger(__name__)


def configure_logging(
    *,
    log_timestamps: bool = True,
    enable_all_loggers: bool = False,
    directory: pathlib.Path | str | None = None,
    level: str = "INFO",
):
    format_ = f"{'%(asctime)s ' if log_timestamps else ''}%(message)s"
    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": format_,
            }
        },
        "handlers": {
            "default": {
                "level": level,
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
            }
        },
        "loggers": {
            "fast_lora": {"level": level},
            "__main__": {"level": level},
        },
        "root": {"handlers": ["default"], "level": level if enable_all_loggers else "WARNING"},
    }
    if directory is not None:
        directory = pathlib.Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        logging_config["handlers"]["file"] = {
            "level": level,
            "formatter": "default",
            "class": "logging.FileHandler",
            "filename": directory / "logs.txt",
        }
        logging_config["root"]["handlers"].append("file")
    logging.config.dictConfig(logging_config)
