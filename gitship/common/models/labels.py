from typing import Dict


class ResourceLabels:
    GITSHIP_DOMAIN: str = "gitship.io/"

    GITSHIP_APP_LABEL = GITSHIP_DOMAIN + "app"

    GITSHIP_COMPONENT_LABEL = GITSHIP_DOMAIN + "component"

    GITSHIP_COMMIT_LABEL = GITSHIP_DOMAIN + "commit"

    GITSHIP_ADDON_LABEL = GITSHIP_DOMAIN + "addon"


class Labels(ResourceLabels):
    KUBERNETES_DOMAIN = "app.kubernetes.io/"

    KUBERNETES_NAME_LABEL = KUBERNETES_DOMAIN + "name"

    KUBERNETES_INSTANCE_LABEL = KUBERNETES_DOMAIN + "instance"

    KUBERNETES_PART_OF_LABEL = KUBERNETES_DOMAIN + "part-of"

    KUBERNETES_MANAGED_BY_LABEL = KUBERNETES_DOMAIN + "managed-by"

    APPLICATION_NAME = "gitship"

    # Pod selectors. Kept short and stable since Deployment selectors are immutable.
    APP_SELECTOR_LABEL = "app"

    ADDON_SELECTOR_LABEL = "addon"

    _labels: Dict[str, str]

    def __init__(self, labels: Dict[str, str] = None) -> None:
        self._labels = labels if labels else dict()

    def update(self, labels: Dict[str, str]) -> "Labels":
        self._labels.update(labels.copy())
        return self

    def as_dict(self) -> Dict[str, str]:
        """Return labels are dictionary."""
        return self._labels.copy()

    def include(self, label: str, value: str) -> "Labels":
        self.update({label: value})
        return self

    def include_gitship_app(self, name: str) -> "Labels":
        return self.include(self.GITSHIP_APP_LABEL, name)

    def include_gitship_component(self, component: str) -> "Labels":
        return self.include(self.GITSHIP_COMPONENT_LABEL, component)

    def include_gitship_commit(self, commit: str) -> "Labels":
        return self.include(self.GITSHIP_COMMIT_LABEL, commit)

    def include_gitship_addon(self, addon: str) -> "Labels":
        return self.include(self.GITSHIP_ADDON_LABEL, addon)

    def include_kubernetes_name(self, name: str) -> "Labels":
        return self.include(self.KUBERNETES_NAME_LABEL, name)

    def include_kubernetes_instance(self, instance_name: str) -> "Labels":
        return self.include(self.KUBERNETES_INSTANCE_LABEL, instance_name)

    def include_kubernetes_part_of(self, instance_name: str) -> "Labels":
        return self.include(
            self.KUBERNETES_PART_OF_LABEL,
            self.get_or_valid_instance_label_value(
                f"{self.APPLICATION_NAME}-{instance_name}"
            ),
        )

    def get_or_valid_instance_label_value(self, instance: str):
        """Validates the instance name and if needed modifies it to make it a valid Label value:
        * (([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9])?
        * 63 characters max
        """

        if not instance:
            return ""

        value = instance[:63]
        while value and value[-1] in (".", "-", "_"):
            value = value[:-1]
        return value

    def include_kubernetes_managed_by(self, operator_name: str) -> "Labels":
        return self.include(self.KUBERNETES_MANAGED_BY_LABEL, operator_name)

    def __str__(self):
        return f"Labels<{self._labels}>"

    @classmethod
    def app_selector(cls, app_name: str) -> "Labels":
        return Labels({cls.APP_SELECTOR_LABEL: app_name})

    @classmethod
    def addon_selector(cls, addon_name: str) -> "Labels":
        return Labels({cls.ADDON_SELECTOR_LABEL: addon_name})

    @classmethod
    def generate_default_labels(
        cls,
        app_name: str,
        component: str,
        managed_by: str,
    ) -> "Labels":
        labels = Labels()
        return (
            labels.include_gitship_app(app_name)
            .include_gitship_component(component)
            .include_kubernetes_name(component)
            .include_kubernetes_instance(app_name)
            .include_kubernetes_part_of(app_name)
            .include_kubernetes_managed_by(managed_by)
        )
