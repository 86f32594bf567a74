import logging


def configure_logging(
    log,
    level=logging.INFO,
    fmt_str="[%(levelname)s] %(message)s",
):
    log.propagate = False
    log.setLevel(level)
    formatter = logging.Formatter(fmt_str)
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    handler.setLevel(level)

    for old_handler in log.handlers[:]:
        log.removeHandler(old_handler)
        old_handler.close()

    log.addHandler(handler)


def configure_debug_logging(log, **kwargs):
    kwargs["level"] = logging.DEBUG
    configure_logging(log, **kwargs)


def package_logger():
    return logging.getLogger(__name__.rpartition(".")[0])
