"""
Entrypoint: load config, init logging, round-trip a few values through the
JSON codec, then fetch a URL and report its status and headers.
"""

import asyncio
import sys

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel

from sampleweb.codec import JsonCodec
from sampleweb.config import Config
from sampleweb.errors import SampleWebError
from sampleweb.fetcher import FetchResult, Request, create_fetcher
from sampleweb.log import configure_logging

logger = structlog.get_logger(__name__)


class SomeStruct(BaseModel):
    value: int


def codec_demo(codec: JsonCodec):
    encoded = codec.encode({"key": "value"})
    logger.info("encoded", payload=encoded.decode("utf-8"))
    decoded = codec.decode(encoded, dict[str, str])
    logger.info("decoded", value=decoded)

    encoded_struct = codec.encode(SomeStruct(value=1))
    logger.info("encoded", payload=encoded_struct.decode("utf-8"))
    decoded_struct = codec.decode(encoded_struct, SomeStruct)
    logger.info("decoded", value=repr(decoded_struct))


def report(result: FetchResult):
    if not result.success:
        logger.error("request_failed", url=result.request.url, error=str(result.error))
        return
    response = result.response
    logger.info("response_received",
                url=response.url,
                status=response.status,
                date=response.header("Date"),
                content_type=response.header("Content-Type"))


async def main(url: str = None):
    """Initialize dependencies and run the walkthrough"""
    load_dotenv()
    config = Config()
    configure_logging(config.logging.get('level', 'INFO'), config.logging.get('format', 'json'))

    codec = JsonCodec.from_config(config.codec)
    try:
        codec_demo(codec)
    except SampleWebError as e:
        logger.error("codec_demo_failed", error=str(e))
        return 1

    url = url or config.demo.get('url')
    request = Request.get(url, headers={"Accept": "application/json"})

    async with create_fetcher(config.fetcher) as fetcher:
        task = fetcher.send(request, report)
        result = await task

    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None)))
