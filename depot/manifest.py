"""
Manifest - Builds IIIF Presentation 3.0 manifests for ready resources.
"""

import json
import logging
import os
from typing import Dict, List, Optional, Sequence

from .records import Image, Resource
from .statuses import ImageStatus

PRESENTATION_CONTEXT = 'http://iiif.io/api/presentation/3/context.json'
IMAGE_SERVICE_TYPE = 'ImageService2'
IMAGE_SERVICE_PROFILE = 'level2'

ATTRIBUTION_LABEL = 'Attribution'
HOMEPAGE_LABEL = 'Homepage'


def language_map(text: str, languages: Sequence[str] = ('none',)) -> Dict[str, List[str]]:
    """Wrap a string as a IIIF language map with the same text for every language."""
    return {lang: [text] for lang in languages}


def manifest_id(base_url: str, resource_id: str) -> str:
    return f"{base_url.rstrip('/')}/iiif/manifests/{resource_id}/manifest.json"


def image_service_id(image: Image, image_service_url: str) -> str:
    """
    Identifier of the image-service endpoint serving an image.

    The output filename with its extension stripped, under the public
    image-service base URL.
    """
    filename = os.path.basename(image.output_path) if image.output_path else image.id
    stem, _ = os.path.splitext(filename)
    return f"{image_service_url.rstrip('/')}/{stem}"


def parse_metadata(
    text: Optional[str],
    logger: Optional[logging.Logger] = None
) -> List[Dict[str, str]]:
    """
    Parse stored label/value pairs.

    Unparseable text yields an empty list and a warning. Entries without a
    string label and value are skipped.
    """
    if not text:
        return []
    logger = logger or logging.getLogger(__name__)
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        logger.warning(f"Ignoring unparseable resource metadata: {e}")
        return []
    if not isinstance(data, list):
        logger.warning("Ignoring resource metadata that is not a list of label/value pairs")
        return []

    pairs = []
    for item in data:
        if not isinstance(item, dict):
            continue
        label, value = item.get('label'), item.get('value')
        if isinstance(label, str) and isinstance(value, str) and label and value:
            pairs.append({'label': label, 'value': value})
    return pairs


def _canvas(
    image: Image,
    index: int,
    base_id: str,
    image_service_url: str,
    languages: Sequence[str]
) -> dict:
    canvas_id = f"{base_id}/canvas/{index}"
    service_id = image_service_id(image, image_service_url)
    return {
        'id': canvas_id,
        'type': 'Canvas',
        'label': language_map(image.original_filename, languages),
        'width': image.width,
        'height': image.height,
        'items': [{
            'id': f"{canvas_id}/page",
            'type': 'AnnotationPage',
            'items': [{
                'id': f"{canvas_id}/annotation",
                'type': 'Annotation',
                'motivation': 'painting',
                'target': canvas_id,
                'body': {
                    'id': f"{service_id}/full/max/0/default.jpg",
                    'type': 'Image',
                    'format': 'image/jpeg',
                    'width': image.width,
                    'height': image.height,
                    'service': [{
                        'id': service_id,
                        'type': IMAGE_SERVICE_TYPE,
                        'profile': IMAGE_SERVICE_PROFILE,
                    }],
                },
            }],
        }],
    }


def build_manifest(
    resource: Resource,
    images: List[Image],
    base_url: str,
    image_service_url: str,
    thumbnail_size: int = 300,
    languages: Sequence[str] = ('none',),
    logger: Optional[logging.Logger] = None
) -> dict:
    """
    Build the manifest document for a resource.

    Callers only invoke this for resources whose status is ready. The
    output depends on nothing but the arguments.

    Args:
        resource: The resource
        images: Its images, in any order
        base_url: Public base URL for manifest and canvas ids
        image_service_url: Public base URL of the image service
        thumbnail_size: Bounding box edge of the thumbnail
        languages: Language keys used for every language map
        logger: Optional logger instance

    Returns:
        Manifest as a JSON-serializable dict
    """
    mid = manifest_id(base_url, resource.id)
    base_id = mid.rsplit('/', 1)[0]

    ordered = sorted(images, key=lambda i: i.order_index)
    renderable = [i for i in ordered if i.status is ImageStatus.READY and i.has_dimensions]

    manifest = {
        '@context': PRESENTATION_CONTEXT,
        'id': mid,
        'type': 'Manifest',
        'label': language_map(resource.title, languages),
        'items': [
            _canvas(image, index, base_id, image_service_url, languages)
            for index, image in enumerate(renderable)
        ],
    }

    if ordered and ordered[0].status is ImageStatus.READY:
        service_id = image_service_id(ordered[0], image_service_url)
        manifest['thumbnail'] = [{
            'id': f"{service_id}/full/!{thumbnail_size},{thumbnail_size}/0/default.jpg",
            'type': 'Image',
            'format': 'image/jpeg',
        }]

    if resource.description:
        manifest['summary'] = language_map(resource.description, languages)

    if resource.attribution:
        manifest['requiredStatement'] = {
            'label': language_map(ATTRIBUTION_LABEL, languages),
            'value': language_map(resource.attribution, languages),
        }

    if resource.license:
        manifest['rights'] = resource.license

    if resource.homepage:
        manifest['homepage'] = [{
            'id': resource.homepage,
            'type': 'Text',
            'label': language_map(HOMEPAGE_LABEL, languages),
            'format': 'text/html',
        }]

    if resource.viewing_direction:
        manifest['viewingDirection'] = resource.viewing_direction

    pairs = parse_metadata(resource.metadata, logger)
    if pairs:
        manifest['metadata'] = [
            {
                'label': language_map(pair['label'], languages),
                'value': language_map(pair['value'], languages),
            }
            for pair in pairs
        ]

    return manifest
