import os

import uvicorn

if __name__ == "__main__":
    uvicorn.run(
        "ledger.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
