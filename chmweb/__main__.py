from chmweb.server import main

main()
