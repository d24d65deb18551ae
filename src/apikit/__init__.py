"""apikit -- an expiring response cache and an async request pipeline.

The package has two independent halves that an application composes:

* :mod:`apikit.cache` -- :class:`~apikit.cache.ApiCache`, a bounded cache of
  time-limited entries with an optional durable mirror;
* :mod:`apikit.client` -- :class:`~apikit.client.HttpClient`, an
  :mod:`httpx`-based pipeline with interceptors, timeout and cancellation
  budgets, and normalized :class:`~apikit.exceptions.ApiError` reporting.

Typical use::

    cache = ApiCache(CacheConfig(default_ttl=60))
    async with HttpClient(ClientConfig(base_url="https://api.example.com")) as api:
        key = create_cache_key("/users", {"page": 1}, "GET")
        users = cache.get(key)
        if users is None:
            users = (await api.get("/users", RequestConfig(params={"page": 1}))).data
            cache.set(key, users)

Modules:
    app: Typer CLI entry point.
    models: Pydantic models shared across the package.
    config: XDG-aware configuration and precedence resolution.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes.
    output: stdout/stderr formatting with Rich support.
    cancellation: Cooperative cancellation tokens.
"""

__version__ = "0.1.0"
