"""replcast - run Clojure programs on a running nREPL server."""

__version__ = "0.1.0"
