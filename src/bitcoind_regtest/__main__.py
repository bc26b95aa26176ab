import uvicorn

from bitcoind_regtest.config import cfg


def main():
    uvicorn.run("bitcoind_regtest.app:app", host=cfg["app"]["host"], port=cfg["app"]["port"], lifespan="on")


if __name__ == "__main__":
    main()
