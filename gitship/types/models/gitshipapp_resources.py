class GitshipAppResources:
    """Encapsulates the naming scheme used for the resources which the operator manages
    for a GitshipApp."""

    @classmethod
    def deployment_name(self, app_name: str):
        """Returns the name of the app workload."""
        return app_name

    @classmethod
    def service_name(self, app_name: str):
        return app_name

    @classmethod
    def ingress_name(self, app_name: str):
        return app_name

    @classmethod
    def persistent_volume_claim_name(self, app_name: str, volume_name: str):
        """Returns the name of the claim backing a declared volume."""
        return f"{app_name}-{volume_name}"

    @classmethod
    def addon_name(self, app_name: str, addon_name: str):
        """Returns the name shared by an addon's deployment and service."""
        return f"{app_name}-{addon_name}"

    @classmethod
    def addon_secret_name(self, app_name: str, addon_name: str):
        return f"{self.addon_name(app_name, addon_name)}-auth"

    @classmethod
    def build_job_name(self, app_name: str, commit: str):
        """Returns the deterministic build job name for a commit."""
        return f"{app_name}-build-{commit[:7]}"

    @classmethod
    def ssh_key_secret_name(self, app_name: str):
        return f"{app_name}-ssh-key"

    @classmethod
    def tls_secret_name(self, app_name: str, host: str):
        return f"{app_name}-{host.replace('.', '-')}-tls"

    @classmethod
    def qualified_service_name(self, app_name: str, namespace: str):
        return f"{self.service_name(app_name)}.{namespace}.svc.cluster.local"
