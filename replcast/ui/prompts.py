"""
Reading a line of input for a remote evaluation.
Used when the program waits on *in* while attached to a terminal.
"""

from prompt_toolkit import prompt


class PromptManager:
    """Reads input lines requested by the server."""

    def __init__(self, message: str = ""):
        self.message = message

    def read_line(self) -> str:
        """
        Read one line from the terminal.

        Returns:
            The line with a trailing newline, or "" at end of input
        """
        try:
            return prompt(self.message) + "\n"
        except EOFError:
            return ""
