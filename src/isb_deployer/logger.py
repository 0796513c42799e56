# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""Primary Logging Configuration Function
"""

import logging
import os
import re

REDACTED_TOKEN = "[REDACTED_TOKEN]"
# Personal, fine-grained, OAuth, user-to-server, server-to-server and
# refresh GitHub tokens.
GITHUB_TOKEN_PATTERN = re.compile(
    r"(?:github_pat_[A-Za-z0-9_]+|gh[pousr]_[A-Za-z0-9]+)"
)
URL_CREDENTIALS_PATTERN = re.compile(r"(https?://)[^/@\s]+@")
LOG_LEVELS = ("DEBUG", "INFO", "WARN", "WARNING", "ERROR", "CRITICAL")


def redact_secrets(text):
    """
    Replaces token-shaped substrings and URL embedded credentials
    with a redaction marker.
    """
    if not text:
        return text
    text = GITHUB_TOKEN_PATTERN.sub(REDACTED_TOKEN, str(text))
    return URL_CREDENTIALS_PATTERN.sub(r"\1[REDACTED]@", text)


class SecretRedactingFilter(logging.Filter):
    """Scrubs secrets from the rendered log message before it is emitted
    """

    def filter(self, record):
        message = record.getMessage()
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def resolve_log_level(level):
    """Maps a LOG_LEVEL setting onto a logging level name, defaulting to INFO
    """
    level = (level or "").upper()
    return level if level in LOG_LEVELS else "INFO"


def configure_logger(logger_name):
    """Configures a generic logger which can be imported and used as needed
    """

    # Create logger and define INFO as the log level
    logger = logging.getLogger(logger_name)
    logger.setLevel(resolve_log_level(os.environ.get("LOG_LEVEL")))
    logger.propagate = False

    if logger.handlers:
        return logger

    # Define our logging formatter
    formatter = logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s | (%(filename)s:%(lineno)d)')

    # Create our stream handler and apply the formatting
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(SecretRedactingFilter())

    # Add the stream handler to the logger
    logger.addHandler(stream_handler)

    return logger
