import os

import uvicorn


def main():
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("dataset_service:app", host="0.0.0.0", port=port, reload=False)


if __name__ == "__main__":
    main()
