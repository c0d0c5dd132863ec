"""
Project directory name decoding.

The assistant stores each project's logs in a directory named after the
project path with separators replaced by dashes, e.g.
``-Users-alice-code-app`` for ``/Users/alice/code/app``.
"""


def decode_project_dir(encoded: str) -> str:
    """Decode a project directory name to a home-relative path.

    ``-Users-alice-code-app`` -> ``~/code/app``. Names without a ``Users``
    segment are returned unchanged.
    """
    stripped = encoded[1:] if encoded.startswith("-") else encoded
    parts = [part for part in stripped.split("-") if part]

    if "Users" not in parts:
        return encoded

    after_home = parts[parts.index("Users") + 2:]
    if not after_home:
        return "~"
    return "~/" + "/".join(after_home)


def project_name(encoded: str) -> str:
    """Last path component of the decoded project path."""
    decoded = decode_project_dir(encoded)
    return decoded.rsplit("/", 1)[-1]
