import logging
import os

import requests

from .errors import FetchError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 256


def remove_partial(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("failed to remove partial download %s: %s", path, e)


class Fetcher:
    """Downloads remote inputs (clips, logos, fonts, audio) to local files."""

    def __init__(self, timeout: float = 60.0, max_redirects: int = 5, session: requests.Session = None):
        self.timeout = timeout
        self.session = session or requests.Session()
        # requests follows 301/302/303/307/308 itself; this bounds the hops
        self.session.max_redirects = max_redirects

    def fetch(self, url: str, dest: str) -> None:
        url = str(url)
        logger.debug("fetch %s -> %s", url, dest)
        try:
            with self.session.get(url, stream=True, timeout=self.timeout, allow_redirects=True) as resp:
                if not 200 <= resp.status_code < 300:
                    raise FetchError(url, status=resp.status_code)
                with open(dest, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
        except FetchError:
            remove_partial(dest)
            raise
        except requests.TooManyRedirects as e:
            remove_partial(dest)
            raise FetchError(url, reason=f"too many redirects ({e})") from e
        except (requests.RequestException, OSError) as e:
            remove_partial(dest)
            logger.warning("download of %s failed: %s", url, e)
            raise FetchError(url, reason=str(e)) from e
        logger.info("downloaded %s (%d bytes)", url, os.path.getsize(dest))
