"""Resource name helpers."""


def increment_count(name: str, delim: str = "-") -> str:
    """Bump the trailing integer of a name, or append ``-1`` if there is none.

    >>> increment_count("mt")
    'mt-1'
    >>> increment_count("mt-3")
    'mt-4'
    >>> increment_count("x-y")
    'x-y-1'
    """
    fields = name.split(delim)
    if len(fields) > 1:
        try:
            count = int(fields[-1])
        except ValueError:
            return f"{name}{delim}1"
        fields[-1] = str(count + 1)
        return delim.join(fields)
    return f"{name}{delim}1"
