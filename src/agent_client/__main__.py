"""Module entrypoint for `python -m agent_client`."""

from agent_client.cli import run

if __name__ == "__main__":
    run()
