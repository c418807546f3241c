from django.apps import apps
from django.test.runner import DiscoverRunner


# Shared helpers that carry tests but are not installed apps.
SUPPORT_PACKAGES = ('apps.core.utils',)


class LocalAppsDiscoverRunner(DiscoverRunner):
    """Without labels, run only the project's own apps and support packages."""

    def build_suite(self, test_labels=None, **kwargs):
        if not test_labels:
            local_apps = [
                app_config.name
                for app_config in apps.get_app_configs()
                if app_config.name.startswith('apps.core.')
            ]
            test_labels = local_apps + [name for name in SUPPORT_PACKAGES if name not in local_apps]
        return super().build_suite(test_labels=test_labels, **kwargs)
