"""Project tree generation.

The orchestrator asks a ProjectGenerator for the file map of a build's
source tree and writes it into the build's staging directory. The basic
generator here emits a Flutter project skeleton whose screens are driven
by a serialized app definition.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Protocol

import yaml

if TYPE_CHECKING:
    from appbuilder.apps.schema import AppConfig, AppPage, BuildRequest, PageComponent

DEFAULT_PACKAGE_NAME = "com.appbuilder.app"

ANDROID_PERMISSIONS = {
    "camera": "android.permission.CAMERA",
    "location": "android.permission.ACCESS_FINE_LOCATION",
    "storage": "android.permission.WRITE_EXTERNAL_STORAGE",
    "internet": "android.permission.INTERNET",
    "bluetooth": "android.permission.BLUETOOTH",
    "microphone": "android.permission.RECORD_AUDIO",
    "push_notifications": "android.permission.RECEIVE_BOOT_COMPLETED",
}

IOS_USAGE_DESCRIPTIONS = {
    "camera": ("NSCameraUsageDescription", "This app needs camera access."),
    "location": (
        "NSLocationWhenInUseUsageDescription",
        "This app needs location access.",
    ),
    "microphone": ("NSMicrophoneUsageDescription", "This app needs microphone access."),
}


class ProjectGenerator(Protocol):
    """Produces the platform project tree for a build."""

    def generate(
        self,
        app: AppConfig,
        pages: list[AppPage],
        components: list[PageComponent],
        request: BuildRequest,
    ) -> dict[str, str]:
        """Return a mapping of relative file path to file contents."""
        ...


def _pubspec(app: AppConfig) -> str:
    data = {
        "name": app.name.lower().replace(" ", "_").replace("-", "_") or "app",
        "description": f"{app.name} generated app",
        "version": f"{app.version_name}+{app.version_code}",
        "environment": {"sdk": ">=3.0.0 <4.0.0"},
        "dependencies": {"flutter": {"sdk": "flutter"}},
        "flutter": {
            "uses-material-design": True,
            "assets": ["lib/app_definition.json"],
        },
    }
    return yaml.safe_dump(data, sort_keys=False)


def _app_definition(
    app: AppConfig, pages: list[AppPage], components: list[PageComponent]
) -> str:
    by_page: dict[str | None, list[dict[str, object]]] = {}
    for component in components:
        by_page.setdefault(component.page_id, []).append(
            component.model_dump(exclude={"page_id", "updated_at"})
        )
    definition = {
        "app": app.model_dump(exclude={"updated_at"}),
        "pages": [
            {
                **page.model_dump(exclude={"updated_at"}),
                "components": by_page.get(page.id, []),
            }
            for page in pages
        ],
    }
    return json.dumps(definition, indent=2, sort_keys=True)


def _android_manifest(app: AppConfig) -> str:
    permissions = "\n".join(
        f'    <uses-permission android:name="{ANDROID_PERMISSIONS[name]}" />'
        for name, enabled in sorted(app.capabilities.items())
        if enabled and name in ANDROID_PERMISSIONS
    )
    return (
        '<manifest xmlns:android="http://schemas.android.com/apk/res/android">\n'
        f"{permissions}\n"
        f'    <application android:label="{app.name}" '
        'android:icon="@mipmap/ic_launcher">\n'
        '        <activity android:name=".MainActivity" android:exported="true" />\n'
        "    </application>\n"
        "</manifest>\n"
    )


def _gradle_properties(app: AppConfig, request: BuildRequest) -> str:
    lines = [
        f"appbuilder.applicationId={app.package_name or DEFAULT_PACKAGE_NAME}",
        f"appbuilder.minSdkVersion={app.min_sdk_version}",
        f"appbuilder.targetSdkVersion={app.target_sdk_version}",
        f"appbuilder.minify={str(bool(request.build_config.get('minify'))).lower()}",
    ]
    if request.target_platform:
        lines.append(f"appbuilder.targetPlatform={request.target_platform}")
    return "\n".join(lines) + "\n"


def _info_plist(app: AppConfig) -> str:
    entries = [
        ("CFBundleDisplayName", app.name),
        ("CFBundleIdentifier", app.package_name or DEFAULT_PACKAGE_NAME),
        ("CFBundleShortVersionString", app.version_name),
        ("CFBundleVersion", str(app.version_code)),
    ]
    for name, enabled in sorted(app.capabilities.items()):
        if enabled and name in IOS_USAGE_DESCRIPTIONS:
            entries.append(IOS_USAGE_DESCRIPTIONS[name])
    body = "\n".join(
        f"\t<key>{key}</key>\n\t<string>{value}</string>" for key, value in entries
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<plist version="1.0">\n<dict>\n'
        f"{body}\n"
        "</dict>\n</plist>\n"
    )


class BasicProjectGenerator:
    """Generates a data-driven Flutter project skeleton."""

    def generate(
        self,
        app: AppConfig,
        pages: list[AppPage],
        components: list[PageComponent],
        request: BuildRequest,
    ) -> dict[str, str]:
        files = {
            "pubspec.yaml": _pubspec(app),
            "lib/app_definition.json": _app_definition(app, pages, components),
        }
        if request.is_ios():
            files["ios/Runner/Info.plist"] = _info_plist(app)
        else:
            files["android/app/src/main/AndroidManifest.xml"] = _android_manifest(app)
            files["android/gradle.properties"] = _gradle_properties(app, request)
        return files


__all__ = ["BasicProjectGenerator", "ProjectGenerator"]
