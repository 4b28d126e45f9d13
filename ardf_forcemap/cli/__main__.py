from ardf_forcemap.cli._impl import main

if __name__ == "__main__":
    main()
