from .logging_utils import Log, get_style, set_verbose

__all__ = ["Log", "get_style", "set_verbose"]
