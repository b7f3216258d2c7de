import os

import uvicorn


def main():
    uvicorn.run(
        "token_gateway.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3000")),
        log_config=None,
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
