import asyncio


async def firestore_run(fn, *args, **kwargs):
    """Run one blocking Firestore SDK call off the event loop."""
    return await asyncio.to_thread(fn, *args, **kwargs)


async def firestore_stream(query) -> list:
    """Materialize a Firestore query; ``stream()`` is a blocking generator."""
    return await asyncio.to_thread(lambda: list(query.stream()))
