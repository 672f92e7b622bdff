"""Plugin entry point.

The container runtime executes this once per lifecycle event with the CNI_*
environment set and the network configuration on stdin. The result goes to
stdout; diagnostics go to the log file.
"""

from __future__ import annotations

import sys

from eni_cni.config import CNIEnvironment
from eni_cni.logging_config import setup_plugin_logging
from eni_cni.plugin import CNIPlugin


def main() -> int:
    env = CNIEnvironment()
    setup_plugin_logging(env.containerid)

    result = CNIPlugin().run(env, sys.stdin.read())
    sys.stdout.write(result.output + "\n")
    sys.stdout.flush()
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
