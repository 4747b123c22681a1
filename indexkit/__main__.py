from indexkit.bootstrap import bootstrap_service

if __name__ == "__main__":
    bootstrap_service()
