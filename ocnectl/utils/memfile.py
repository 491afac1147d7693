"""Files that never touch the disk, for short-lived credentials."""
import os
import tempfile


def in_memory_file(name: str, contents: bytes = b"") -> str:
    """Create an anonymous in-memory file and return a path that opens it.

    On platforms without memfd the file is created in a private temporary
    directory instead.
    """
    if hasattr(os, "memfd_create"):
        fd = os.memfd_create(name, 0)
        if contents:
            os.write(fd, contents)
        return f"/proc/self/fd/{fd}"

    directory = tempfile.mkdtemp(prefix="ocne-")
    path = os.path.join(directory, name)
    fd = os.open(path, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(contents)
    return path
