from __future__ import annotations

"""Release path helpers built from the resolved deployment params."""

import posixpath
import time
from typing import Dict


RELEASE_ID_FORMAT = "%Y%m%d%H%M%S"


def _get(d: Dict, *keys, default=None):
    cur = d
    for k in keys:
        if not isinstance(cur, dict):
            return default
        cur = cur.get(k)
        if cur is None:
            return default
    return cur


def slugify(s: str) -> str:
    return (
        (s or "").strip().lower().replace(" ", "_").replace("/", "-").replace("\\", "-")
    )


def new_release_id() -> str:
    return time.strftime(RELEASE_ID_FORMAT)


def application(p: Dict) -> str:
    return slugify(_get(p, "application", default="app"))


def deploy_to(p: Dict) -> str:
    return _get(p, "deploy_to", default=f"/var/www/{application(p)}")


def releases_path(p: Dict) -> str:
    return posixpath.join(deploy_to(p), "releases")


def shared_path(p: Dict) -> str:
    return posixpath.join(deploy_to(p), "shared")


def current_path(p: Dict) -> str:
    return posixpath.join(deploy_to(p), "current")


def release_id(p: Dict) -> str:
    rid = _get(p, "runtime", "release")
    if not rid:
        raise KeyError("No release id in params; run inside a deployment")
    return rid


def release_path(p: Dict) -> str:
    return posixpath.join(releases_path(p), release_id(p))
