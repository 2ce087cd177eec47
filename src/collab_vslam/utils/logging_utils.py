import rich

_log_styles = {
    "LoopClosing": "bold green",
    "Exchange": "bold cyan",
    "Correction": "bold magenta",
    "GlobalBA": "bold yellow",
}

_verbose = True


def set_verbose(verbose):
    """Enable or silence debug-level messages."""
    global _verbose
    _verbose = bool(verbose)


def get_style(tag):
    if tag in _log_styles.keys():
        return _log_styles[tag]
    return "bold blue"


def Log(*args, tag="LoopClosing", debug=False):
    if debug and not _verbose:
        return
    style = get_style(tag)
    rich.print(f"[{style}]{tag}:[/{style}]", *args)
