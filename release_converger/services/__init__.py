"""Platform adapters: helm (PackageManager), Kubernetes (OrchestrationAPI), events, metrics."""
