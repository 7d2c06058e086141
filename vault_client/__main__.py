from vault_client.app import run_host

raise SystemExit(run_host())
