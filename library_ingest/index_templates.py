import logging
from typing import Any, Dict

from library_ingest.errors import TemplateError
from library_ingest.opensearch import OpenSearchClient

logger = logging.getLogger(__name__)

NORI_ANALYSIS: Dict[str, Any] = {
    "analyzer": {
        "nori-default": {
            "type": "custom",
            "tokenizer": "tokenizer_discard_punctuation_false",
            "filter": ["part_of_speech_stop_sp", "nori_number", "nori_readingform"],
        }
    },
    "tokenizer": {
        "tokenizer_discard_punctuation_false": {
            "type": "nori_tokenizer",
            "discard_punctuation": "false",
        }
    },
    "filter": {
        "part_of_speech_stop_sp": {
            "type": "nori_part_of_speech",
            "stoptags": ["SP"],
        }
    },
}


def _nori_field(base_type: str = "text") -> Dict[str, Any]:
    return {
        "type": base_type,
        "fields": {"nori": {"type": "text", "analyzer": "nori-default"}},
    }


def _keyword() -> Dict[str, Any]:
    return {"type": "keyword"}


def library_template() -> Dict[str, Any]:
    return {
        "index_patterns": ["library-*"],
        "template": {
            "settings": {"analysis": NORI_ANALYSIS},
            "mappings": {
                "properties": {
                    "libCode": _keyword(),
                    "libName": _nori_field(),
                    "address": _nori_field("keyword"),
                    "location": {"type": "geo_point"},
                    "tel": _keyword(),
                    "fax": _keyword(),
                    "homepage": _keyword(),
                    "BookCount": {"type": "long"},
                    "operatingTime": _keyword(),
                    "closed": _keyword(),
                }
            },
        },
        "version": 1,
        "_meta": {"description": "Index template for library"},
    }


def book_template() -> Dict[str, Any]:
    return {
        "index_patterns": ["book-*"],
        "template": {
            "settings": {
                # bulk loads run without refresh; keep background refreshes rare
                "refresh_interval": "300s",
                "analysis": NORI_ANALYSIS,
            },
            "mappings": {
                "properties": {
                    "title": _nori_field(),
                    "authors": _nori_field(),
                    "publisher": _nori_field(),
                    "publicationYear": _keyword(),
                    "isbn": _keyword(),
                    "setIsbn": _keyword(),
                    "additionSymbol": _keyword(),
                    "vol": _keyword(),
                    "kdc": _keyword(),
                    "bookCount": {"type": "integer"},
                    "loanCount": {"type": "integer"},
                    "regDate": {"type": "date", "format": "yyyy-MM-dd"},
                    "libCode": _keyword(),
                }
            },
        },
        "version": 1,
        "_meta": {"description": "Index template for book"},
    }


TEMPLATES = {
    "library": library_template,
    "book": book_template,
}


async def put_templates(client: OpenSearchClient) -> None:
    for name, build in TEMPLATES.items():
        status = await client.put_index_template(name, build())
        if status != 200:
            raise TemplateError(f"index template {name} was not acknowledged (HTTP {status})", stage="TEMPLATES", detail={"status": status})
        logger.info("index template %s applied", name)
