"""botwatch: supervise a chat bot process and keep a post-mortem of every run."""

__version__ = "0.3.0"


def main():
    """CLI entry point: delegates to botwatch.cli.main()."""
    from botwatch.cli import main as _main
    _main()


__all__ = ["__version__", "main"]
