from kraven.bot import main

main()
