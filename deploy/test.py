import sys

import httpx

# Address of a running exporter (override with the first argument)
exporter_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8080/metrics"

# Scrape once, exactly as Prometheus would
response = httpx.get(exporter_url, timeout=60.0)
response.raise_for_status()

# Print the build agent and pool series, skipping HELP/TYPE lines
wanted = ("build_agents_total", "pool_")
for line in response.text.splitlines():
    if line.startswith(wanted):
        print(line)
