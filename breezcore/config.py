"""Reading the breez.conf configuration file."""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field, fields
from typing import Any, Optional, Union

CONFIG_FILE = "breez.conf"

_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}

# Fields carrying this metadata are not read from the file.
_NOT_AN_OPTION = {"option": False}


@dataclass
class JobConfig:
    """Options of the background job."""

    connected_peers: list = field(default_factory=list, metadata={"long": "peer"})
    assert_filter_header: str = ""
    disable_rest: bool = False


@dataclass
class Config:
    """The application configuration.

    Every field except working_dir and job_cfg is an option whose name in the
    file is the field name without underscores, unless a different name is
    given in the field's metadata.
    """

    working_dir: str = field(default="", metadata=_NOT_AN_OPTION)
    breez_server: str = ""
    breez_server_no_tls: bool = False
    lsp_token: str = ""
    swapper_pubkey: str = ""
    network: str = ""
    grpc_keep_alive: bool = False
    bootstrap_url: str = field(default="", metadata={"long": "bootstrap"})
    closed_channels_url: str = ""
    bug_report_url: str = ""
    bug_report_url_secret: str = ""
    tx_spent_url: str = ""
    job_cfg: JobConfig = field(default_factory=JobConfig, metadata=_NOT_AN_OPTION)


def _options(target: Any) -> dict:
    """Map each option name in the file to the attribute it sets."""
    return {
        f.metadata.get("long", f.name.replace("_", "")): f.name
        for f in fields(target)
        if f.metadata.get("option", True)
    }


def _parse_bool(value: str, where: str) -> bool:
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{where}: invalid boolean value {value!r}")


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def _assign(target: Any, attr: str, value: Optional[str], where: str) -> None:
    current = getattr(target, attr)
    if isinstance(current, bool):
        setattr(target, attr, True if value is None or value == "" else _parse_bool(value, where))
        return
    if value is None:
        raise ValueError(f"{where}: option {attr} needs a value")
    value = _unquote(value)
    if isinstance(current, list):
        current.append(value)
    else:
        setattr(target, attr, value)


def load_config(working_dir: Union[str, os.PathLike]) -> Config:
    """Parse breez.conf in working_dir into a Config."""
    working_dir = os.fspath(working_dir)
    path = os.path.join(working_dir, CONFIG_FILE)
    with open(path, encoding="utf-8") as fh:
        text = fh.read()

    cfg = Config(working_dir=working_dir)
    sections = {"application options": cfg, "job options": cfg.job_cfg}
    section: Optional[str] = None

    for lineno, raw in enumerate(text.splitlines(), 1):
        where = f"{path}:{lineno}"
        line = raw.strip()
        if not line or line[0] in ";#":
            continue
        if line.startswith("["):
            if not line.endswith("]"):
                raise ValueError(f"{where}: malformed section header")
            name = line[1:-1].strip().lower()
            if name not in sections:
                raise ValueError(f"{where}: unknown section {name!r}")
            section = name
            continue
        name, sep, value = line.partition("=")
        name = name.strip()
        targets = [sections[section]] if section else list(sections.values())
        for target in targets:
            options = _options(target)
            if name in options:
                _assign(target, options[name], value.strip() if sep else None, where)
                break
        else:
            raise ValueError(f"{where}: unknown option {name!r}")
    return cfg


class _Once:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.done = False
        self.config: Optional[Config] = None
        self.error: Optional[Exception] = None


_once = _Once()


def get_config(working_dir: Union[str, os.PathLike]) -> Config:
    """Return the process-wide configuration, loading it on the first call.

    Later calls return the first result (or raise the first error) whatever
    directory they are given.
    """
    with _once.lock:
        if not _once.done:
            try:
                _once.config = load_config(working_dir)
            except (OSError, ValueError) as exc:
                _once.error = exc
            _once.done = True
    if _once.error is not None:
        raise _once.error
    return _once.config