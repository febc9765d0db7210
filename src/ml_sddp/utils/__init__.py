from .timing import Timer
