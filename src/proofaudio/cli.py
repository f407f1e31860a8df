"""
proofaudio CLI entrypoint.

This module provides the console_script entrypoint for the proofaudio package.
"""


def main():
    """proofaudio CLI entrypoint."""
    from proofaudio.commands import proofaudio_app

    proofaudio_app()


if __name__ == "__main__":
    main()
