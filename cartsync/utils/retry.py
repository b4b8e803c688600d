# cartsync/utils/retry.py
import redis
import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

# timeout moze przyjsc juz po zapisie po stronie serwera
TRANSPORT_ERRORS = (requests.ConnectionError, requests.Timeout)


def http_retry(attempts: int = 3, on=TRANSPORT_ERRORS):
    # tylko bledy transportu, odpowiedzi 4xx/5xx nie sa powtarzane
    return retry(
        reraise=True,
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.3, min=0.3, max=3),
        retry=retry_if_exception_type(on),
    )


def redis_retry():
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type(redis.RedisError),
    )
