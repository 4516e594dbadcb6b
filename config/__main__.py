"""Command line interface for checking configuration loading"""
from pathlib import Path

from . import load_config, ConfigurationError


EXAMPLE_SETTINGS = """[DEFAULT]
# Websocket JSON-RPC endpoint of the ledger node
ledger_ws_url = wss://eth-sepolia.example/ws

# One contract address per tracked event source
registry_address = 0x0000000000000000000000000000000000000001
staking_address = 0x0000000000000000000000000000000000000002
lending_address = 0x0000000000000000000000000000000000000003
marketplace_address = 0x0000000000000000000000000000000000000004
oracle_address = 0x0000000000000000000000000000000000000005

# Projection database
db_url = postgresql://root@localhost:26257/tickets?sslmode=disable
store_backend = postgres

# Reconnect backoff (seconds); raise reconnect_max_delay for exponential backoff
reconnect_delay = 5
reconnect_max_delay = 5
reconnect_jitter = false

# Block to replay from when a source has no checkpoint (empty = current head)
start_block =

# Directory holding <source>.json ABI files (optional)
abi_dir =

token_decimals = 6
api_host = 0.0.0.0
api_port = 8000
embed_ingestion = false
log_level = INFO
"""


def main():
    """Display loaded configuration"""
    try:
        settings = load_config()
    except ConfigurationError as e:
        print(str(e))
    else:
        print("\nSettings Configuration:")
        print("-" * 50)
        for key, value in sorted(settings.items()):
            print(f"{key}: {value}")

    # Save example configuration file
    examples_dir = Path("examples")
    examples_dir.mkdir(exist_ok=True)

    with open(examples_dir / "settings.conf.example", "w") as f:
        f.write(EXAMPLE_SETTINGS)
    print(f"\nWrote {examples_dir / 'settings.conf.example'}")


if __name__ == "__main__":
    main()
