import argparse
import logging

from privacypool.config import Config
from privacypool.sim.simulation import Simulation

if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Run privacy pool simulation",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config", type=str, required=True, help="Configuration file path"
    )
    parser.add_argument(
        "--log-level", type=str, default="WARNING", help="Logging level"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = Config.load(args.config)
    if config.simulation is None:
        parser.error(f"{args.config} has no 'simulation' section")

    Simulation(config).run()

    print("Simulation complete!")
