"""Terminal utility for colored output."""


class ColorPrinter:
    """
    Colors sweep status lines with ANSI escape codes.
    """

    # ANSI Color Codes
    CYAN = "\033[96m"
    GREEN = "\033[92m"
    RED = "\033[91m"
    RESET = "\033[0m"
    BOLD = "\033[1m"

    @staticmethod
    def colorize(line) -> str:
        """Pick a color for a sweep status line from its content."""
        if "FAIL" in line or "Exception" in line:
            color = ColorPrinter.RED
        elif "PASS" in line:
            color = ColorPrinter.GREEN
        elif "DEBUG:" in line:
            color = ColorPrinter.CYAN
        elif "====" in line:
            color = ColorPrinter.BOLD
        else:
            return line
        return f"{color}{line}{ColorPrinter.RESET}"

    @staticmethod
    def status(line):
        """Print a sweep status line; usable directly as a status sink."""
        print(ColorPrinter.colorize(line))
