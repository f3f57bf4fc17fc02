"""Example of managing chains remotely through the HTTP client."""

import asyncio

from async_timetable import CommandKind, TimetableHttpClient


async def main():
    client = TimetableHttpClient(
        base_url="http://localhost:8000/timetable",
        auth_token="your-secret-token",  # Optional, if configured
        timeout=10.0,
    )

    try:
        chain_id = await client.add_job(
            name="morning-greeting",
            schedule="0 8 * * 1-5",
            command="Greet",
            kind=CommandKind.BUILTIN,
            parameters="team",
            client_name="worker01",
        )
        print(f"Chain added with ID {chain_id}")

        task_id = await client.add_task(
            parent_id=chain_id,
            command="SELECT pg_sleep(1)",
            kind=CommandKind.SQL,
        )
        print(f"Appended task {task_id}")

        print(await client.get_chain(chain_id))

        # Run it right away on worker01
        await client.start_chain(chain_id, "worker01")

    except Exception as e:
        print(f"Error: {e}")


if __name__ == "__main__":
    asyncio.run(main())
