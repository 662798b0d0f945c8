"""Resource builders for release tracks and the routing resource.

A release ``web`` owns two tracks, ``web-blue`` and ``web-green``, each a
Deployment plus a Service selecting it, and one ``TrafficSplit`` named
``web`` whose backends always list both track Services.  Listing both
backends in every write keeps the weights summing to 100, so no write ever
leaves traffic without a destination.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping

from kubesync.models.delivery import ReleaseSpec, TrackName
from kubesync.models.resources import LiveResource, ResourceKey, ResourceSpec, spec_labels

VERSION_LABEL = "app.kubesync.io/version"
TRACK_LABEL = "app.kubesync.io/track"
APP_LABEL = "app"


def _selector(release: ReleaseSpec, track: TrackName) -> dict[str, str]:
    return {APP_LABEL: release.name, TRACK_LABEL: track.value}


def track_resources(
    release: ReleaseSpec,
    track: TrackName,
    labels: Mapping[str, str],
) -> dict[ResourceKey, ResourceSpec]:
    """Deployment and Service for *track* running ``release.version``."""
    deployment_key, service_key = release.track_keys(track)
    selector = _selector(release, track)
    resource_labels = {**labels, **selector, VERSION_LABEL: release.version}

    template = copy.deepcopy(dict(release.template))
    metadata = template.setdefault("metadata", {})
    if not isinstance(metadata, dict):
        metadata = {}
        template["metadata"] = metadata
    pod_labels = metadata.get("labels")
    metadata["labels"] = {**(pod_labels if isinstance(pod_labels, dict) else {}), **selector, VERSION_LABEL: release.version}

    deployment: ResourceSpec = {
        "metadata": {"labels": dict(resource_labels)},
        "spec": {
            "replicas": release.replicas,
            "selector": {"matchLabels": dict(selector)},
            "template": template,
        },
    }
    service: ResourceSpec = {
        "metadata": {"labels": dict(resource_labels)},
        "spec": {
            "selector": dict(selector),
            "ports": [{"port": release.port, "targetPort": release.target_port, "protocol": "TCP"}],
        },
    }
    return {deployment_key: deployment, service_key: service}


def routing_spec(
    release: ReleaseSpec,
    weights: Mapping[TrackName, int],
    labels: Mapping[str, str],
) -> ResourceSpec:
    """TrafficSplit routing *weights* across both tracks.

    Raises:
        ValueError: weights are out of range or do not sum to 100.
    """
    blue, green = weights.get(TrackName.BLUE, 0), weights.get(TrackName.GREEN, 0)
    if not (0 <= blue <= 100 and 0 <= green <= 100 and blue + green == 100):
        raise ValueError(f"track weights must be within 0..100 and sum to 100, got blue={blue} green={green}")
    return {
        "metadata": {"labels": dict(labels)},
        "spec": {
            "service": release.name,
            "backends": [
                {"service": release.track_keys(TrackName.BLUE)[1].name, "weight": blue},
                {"service": release.track_keys(TrackName.GREEN)[1].name, "weight": green},
            ],
        },
    }


def parse_weights(release: ReleaseSpec, routing: LiveResource | None) -> dict[TrackName, int] | None:
    """Read per-track weights from a live TrafficSplit; None when absent or unparsable."""
    if routing is None:
        return None
    body = routing.spec.get("spec")
    backends = body.get("backends") if isinstance(body, dict) else None
    if not isinstance(backends, list):
        return None
    by_service = {release.track_keys(track)[1].name: track for track in TrackName}
    weights = {TrackName.BLUE: 0, TrackName.GREEN: 0}
    for backend in backends:
        if not isinstance(backend, dict):
            continue
        track = by_service.get(str(backend.get("service")))
        weight = backend.get("weight")
        if track is not None and isinstance(weight, int):
            weights[track] = weight
    return weights


def track_version(deployment: LiveResource | None) -> str | None:
    if deployment is None:
        return None
    return spec_labels(deployment.spec).get(VERSION_LABEL)
